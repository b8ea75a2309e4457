"""Rule synchronization engine: validation, compilation, reconciliation, expiry."""

from .compiler import (
    compile_condition,
    compile_rules,
    rule_from_dict,
    rule_to_dict,
    serialize_rule,
)
from .expiry import ALARM_NAME, ExpiryScheduler, SchedulerState
from .gateway import PersistenceGateway
from .interchange import ConfigDraft, InvalidImportError, export_config, import_config
from .matcher import condition_matches, headers_for_url
from .reconciler import RuleDelta, RuleReconciler, compute_delta
from .service import HeaderModifier, SaveResult, Status
from .services import (
    AsyncioTimerService,
    JsonFileRuleTable,
    JsonFileStore,
    MemoryRuleTable,
    MemoryStore,
    ServiceError,
)
from .types import (
    AnchoredPatternCondition,
    Configuration,
    ExpiryState,
    FilterRule,
    GlobalCondition,
    HeaderAction,
    HeaderEntry,
    HostPrefixCondition,
    MatchMode,
    PatternScope,
    StoredConfig,
    UrlCondition,
)
from .validator import (
    DuplicateHeaderKeyError,
    EmptyFieldError,
    InvalidDomainPatternError,
    InvalidEnabledFlagError,
    InvalidExpiryMinutesError,
    InvalidHeaderNameError,
    InvalidHeaderRowError,
    InvalidHeaderValueError,
    InvalidMatchModeError,
    UnsupportedModeForDomainError,
    ValidationError,
    find_validation_errors,
    validate,
)

__all__ = [
    # Types
    "Configuration",
    "HeaderEntry",
    "MatchMode",
    "FilterRule",
    "HeaderAction",
    "UrlCondition",
    "GlobalCondition",
    "HostPrefixCondition",
    "AnchoredPatternCondition",
    "PatternScope",
    "ExpiryState",
    "StoredConfig",
    # Validator
    "validate",
    "find_validation_errors",
    "ValidationError",
    "EmptyFieldError",
    "InvalidHeaderNameError",
    "InvalidHeaderValueError",
    "InvalidHeaderRowError",
    "DuplicateHeaderKeyError",
    "InvalidDomainPatternError",
    "UnsupportedModeForDomainError",
    "InvalidMatchModeError",
    "InvalidExpiryMinutesError",
    "InvalidEnabledFlagError",
    # Compiler
    "compile_condition",
    "compile_rules",
    "rule_to_dict",
    "rule_from_dict",
    "serialize_rule",
    # Matcher
    "condition_matches",
    "headers_for_url",
    # Reconciler
    "RuleDelta",
    "RuleReconciler",
    "compute_delta",
    # Expiry
    "ALARM_NAME",
    "ExpiryScheduler",
    "SchedulerState",
    # Persistence and services
    "PersistenceGateway",
    "ServiceError",
    "MemoryStore",
    "JsonFileStore",
    "MemoryRuleTable",
    "JsonFileRuleTable",
    "AsyncioTimerService",
    # Interchange
    "ConfigDraft",
    "InvalidImportError",
    "export_config",
    "import_config",
    # Service
    "HeaderModifier",
    "SaveResult",
    "Status",
]
