# src/mci_registry/db/base_session.py
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()

# A factory for creating new Session objects; bind per engine at call time.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)
