"""Library App - Utilities Package

Helpers shared by the core and the entry points:
- Input validation (validators.py)
- HAL hypermedia links (hal.py)
- CLI output formatting (ui_helpers.py)
"""
