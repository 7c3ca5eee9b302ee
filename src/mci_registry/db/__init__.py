# src/mci_registry/db/__init__.py
