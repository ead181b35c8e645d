from __future__ import annotations

"""Error taxonomy for beam-search subgraph contracts.

Contract errors describe a malformed graph and are permanent: they are raised
once, at load time, and never retried. PreconditionViolation marks a caller
bug (feeds requested before validation) and is not meant to be caught.
"""

from typing import Any


class ContractError(ValueError):
    """Base class for subgraph signature mismatches."""


class ContractArityError(ContractError):
    def __init__(self, message: str, actual: int) -> None:
        super().__init__(message)
        self.actual = actual


class ContractNamingError(ContractError):
    def __init__(self, kind: str, index: int, expected: str, actual: str) -> None:
        super().__init__(f"subgraph {kind} {index} shall be named as {expected}, got: {actual}")
        self.kind = kind
        self.index = index
        self.expected = expected
        self.actual = actual


class ContractTypeError(ContractError):
    def __init__(self, message: str, expected: Any, actual: Any) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ContractShapeError(ContractError):
    pass


class PreconditionViolation(RuntimeError):
    pass
