"""Library App - Utilities

- validators: girdi doğrulama (FieldValidator)
- ui_helpers: CLI çıktı modları (plain | json | rich)
"""
