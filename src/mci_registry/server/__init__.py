# src/mci_registry/server/__init__.py
