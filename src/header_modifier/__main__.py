"""Allow running as: python -m header_modifier"""

from .cli import main

main()
