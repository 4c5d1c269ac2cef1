# src/sigengine/errors.py
"""
Fatal error tier for the signature engine.

Every error carries a stable code so hosts can report and filter them.
Advisory conditions are not exceptions; see ``audit.Advisory``.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple


class ErrorCode(Enum):
    # Dose input (DOSE_xxx)
    DOSE_INVALID = "DOSE_001"
    DOSE_BELOW_FRACTION_FLOOR = "DOSE_002"
    DOSE_FRACTION_NOT_ALLOWED = "DOSE_003"
    DOSE_OUTSIDE_RANGE = "DOSE_004"
    DOSE_DISPENSER_LIMIT = "DOSE_005"

    # Timing / route input
    TIMING_INVALID = "TIMING_001"
    TIMING_OUTSIDE_RANGE = "TIMING_002"
    ROUTE_INVALID = "ROUTE_001"

    # Builder lifecycle
    BUILD_INCOMPLETE = "BUILD_001"
    BUILD_INVALID_MEDICATION = "BUILD_002"

    # Regimens
    PRN_RANGE_INVALID = "PRN_001"
    PRN_RANGE_CONFLICT = "PRN_002"
    TAPER_NO_PHASES = "TAPER_001"
    TAPER_SEQUENCE_GAP = "TAPER_002"
    TAPER_PHASE_INVALID = "TAPER_003"
    TAPER_PHASE_NOT_FOUND = "TAPER_004"

    # Dispatcher / registry
    DISPATCH_NO_MATCH = "DISPATCH_001"
    DISPATCH_AMBIGUOUS = "DISPATCH_002"
    REGISTRY_DUPLICATE = "REGISTRY_001"
    REGISTRY_PRIORITY_CONFLICT = "REGISTRY_002"
    REGISTRY_NOT_FOUND = "REGISTRY_003"


class SignatureError(ValueError):
    """Base class for every fatal condition raised by the engine."""

    default_code = ErrorCode.DOSE_INVALID

    def __init__(self, message: str, code: Optional[ErrorCode] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.code.value,
            "error_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }


class InvalidInputError(SignatureError):
    default_code = ErrorCode.DOSE_INVALID


class FractionalDoseError(SignatureError):
    default_code = ErrorCode.DOSE_FRACTION_NOT_ALLOWED


class DoseRangeViolationError(SignatureError):
    default_code = ErrorCode.DOSE_OUTSIDE_RANGE


class FrequencyRangeViolationError(SignatureError):
    default_code = ErrorCode.TIMING_OUTSIDE_RANGE


class DispenserLimitError(SignatureError):
    default_code = ErrorCode.DOSE_DISPENSER_LIMIT


class IncompleteBuilderError(SignatureError):
    default_code = ErrorCode.BUILD_INCOMPLETE


class InvalidMedicationError(SignatureError):
    default_code = ErrorCode.BUILD_INVALID_MEDICATION


class TaperingScheduleError(SignatureError):
    default_code = ErrorCode.TAPER_PHASE_INVALID


class DispatchError(SignatureError):
    default_code = ErrorCode.DISPATCH_NO_MATCH


class NoMatchingStrategyError(DispatchError):
    default_code = ErrorCode.DISPATCH_NO_MATCH

    def __init__(self, medication_name: str, available: Sequence[str]):
        self.available = tuple(available)
        super().__init__(
            f"No strategy matches medication '{medication_name}' "
            f"(registered: {', '.join(self.available) or 'none'})",
            details={"medication": medication_name, "available": list(self.available)},
        )


class AmbiguousStrategyError(DispatchError):
    default_code = ErrorCode.DISPATCH_AMBIGUOUS

    def __init__(self, candidates: Sequence[Tuple[str, int]], medication_name: str):
        self.candidates = tuple(candidates)
        names = ", ".join(f"{n} (specificity {s})" for n, s in self.candidates)
        super().__init__(
            f"Multiple strategies share the highest specificity for '{medication_name}': {names}",
            details={"medication": medication_name, "candidates": [list(c) for c in self.candidates]},
        )


class RegistryError(SignatureError):
    default_code = ErrorCode.REGISTRY_DUPLICATE


class DuplicateStrategyError(RegistryError):
    default_code = ErrorCode.REGISTRY_DUPLICATE

    def __init__(self, name: str, kind: str):
        self.name = name
        self.kind = kind
        super().__init__(f"{kind.capitalize()} strategy '{name}' is already registered",
                         details={"name": name, "kind": kind})


class PriorityConflictError(RegistryError):
    default_code = ErrorCode.REGISTRY_PRIORITY_CONFLICT

    def __init__(self, conflicts: Sequence[Tuple[str, int]]):
        self.conflicts = tuple(conflicts)
        listing = ", ".join(f"{n} (priority {p})" for n, p in self.conflicts)
        super().__init__(f"Modifier priority conflict: {listing}",
                         details={"conflicts": [list(c) for c in self.conflicts]})


class StrategyNotFoundError(RegistryError):
    default_code = ErrorCode.REGISTRY_NOT_FOUND
