"""Credential store errors.

Learn: The store translates driver-level failures into a small set of
tagged exceptions. Callers match on the exception class and its `field`
attribute, never on driver error names or codes.
"""


class CredentialStoreError(Exception):
    """Base class for failures raised by the credential store."""


class DuplicateKey(CredentialStoreError):
    """A unique constraint (email or username) was violated."""

    def __init__(self, field: str):
        super().__init__(f"Duplicate value for {field}")
        self.field = field


class FieldInvalid(CredentialStoreError):
    """A user field failed validation."""

    def __init__(self, field: str, reason: str = "invalid"):
        super().__init__(f"Invalid {field}: {reason}")
        self.field = field
        self.reason = reason
