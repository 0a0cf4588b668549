"""Library App - helper utilities

- validators: input checks for titles, names and emails
- ui_helpers: CLI output formatting (plain, json, rich)
"""
