"""
Settings package for ExpenseSync.

Modules:

- :mod:`ExpenseSync.settings.lib` – Schema validation, file paths and the settings API.
"""
