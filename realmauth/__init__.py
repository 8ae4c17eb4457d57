"""Account, verification and invite-code backend for Realm Hunter."""

__version__ = "0.1.0"
