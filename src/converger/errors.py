"""Exception hierarchy for the converger engine.

The engine only raises; the CLI decides how each family is reported
and which exit code it maps to.
"""

from typing import Optional


class ConvergerError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ConvergerError):
    """Declaration set is invalid. Detected before any live operation."""


class DuplicateDeclarationError(ConfigurationError):
    """Two declarations share the same kind and name."""


class UnknownKindError(ConfigurationError):
    """Declaration uses a kind the provider registry does not know."""


class InvalidReferenceError(ConfigurationError):
    """Reference expression is malformed."""


class UnresolvedReferenceError(ConfigurationError):
    """Reference points at an undeclared instance or attribute."""

    def __init__(self, consumer: str, target: str, attribute: Optional[str] = None):
        self.consumer = consumer
        self.target = target
        self.attribute = attribute
        if attribute is None:
            msg = f"'{consumer}' references undeclared instance '{target}'"
        else:
            msg = f"'{consumer}' references unknown attribute '{attribute}' of '{target}'"
        super().__init__(msg)


class TypeMismatchError(ConfigurationError):
    """Value kind does not match what the attribute requires."""

    def __init__(self, address: str, attribute: str, expected: str, actual: str):
        self.address = address
        self.attribute = attribute
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"'{address}' attribute '{attribute}' expects {expected}, got {actual}"
        )


class CyclicDependencyError(ConfigurationError):
    """Reference graph contains a cycle.

    Attributes:
        cycle: Addresses along the cycle, first element repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency: {' -> '.join(self.cycle)}")


class LockContentionError(ConvergerError):
    """State lock is held by another run."""

    def __init__(self, holder: str, lock_id: str, acquired_at: Optional[float] = None):
        self.holder = holder
        self.lock_id = lock_id
        self.acquired_at = acquired_at
        super().__init__(f"State is locked by '{holder}' (lock id {lock_id})")


class ConflictError(ConvergerError):
    """State record changed underneath a lock holder.

    Means the locking invariant was broken; never merged or retried.
    """


class ProviderError(ConvergerError):
    """A provider call failed.

    Attributes:
        retryable: True when the provider reports a transient condition
    """

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class ResourceNotFoundError(ProviderError):
    """Provider has no live object for the requested id."""


class OperationTimeoutError(ProviderError):
    """Provider did not confirm the operation within its timeout."""


class UnresolvedValueError(ConvergerError):
    """Referenced attribute is absent from the producer's committed state.

    Attributes:
        address: Consumer instance address
        missing: Reference targets as kind.name.attribute
    """

    def __init__(self, address: str, missing: list[str]):
        self.address = address
        self.missing = list(missing)
        super().__init__(
            f"'{address}' references values its producers did not report: "
            f"{', '.join(self.missing)}"
        )
