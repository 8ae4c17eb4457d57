from realmauth.storage.common import CredentialStore
from realmauth.storage.errors import ConstraintViolation
from realmauth.storage.memory import MemoryStore

__all__ = ["ConstraintViolation", "CredentialStore", "MemoryStore"]
