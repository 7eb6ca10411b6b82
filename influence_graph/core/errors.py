"""
Influence Graph Error Taxonomy

Every rejection carries a deterministic ErrorCode. InvalidInput is raised
before any computation runs, so nothing is ever partially applied.
"""

import re
from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Deterministic error codes."""
    E_SELF_EDGE = "E_SELF_EDGE"         # source == target
    E_WEIGHT = "E_WEIGHT"               # weight outside [0, 100]
    E_MISSING = "E_MISSING"             # required id absent
    E_TENANT = "E_TENANT"               # malformed tenant scope
    E_DUPLICATE = "E_DUPLICATE"         # edge already exists
    E_PARAM = "E_PARAM"                 # bad algorithm parameter
    E_NOT_FOUND = "E_NOT_FOUND"         # unknown node/edge id
    E_BUDGET = "E_BUDGET"               # traversal budget exhausted
    E_STORAGE = "E_STORAGE"             # load/persist failed


class InfluenceError(Exception):
    code: ErrorCode = ErrorCode.E_PARAM
    retryable = False

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code.value}


class InvalidInput(InfluenceError):
    code = ErrorCode.E_PARAM


class NotFound(InfluenceError):
    code = ErrorCode.E_NOT_FOUND


class ComputationTimeout(InfluenceError):
    """Traversal exceeded its budget. Indicates misconfiguration, never transient."""
    code = ErrorCode.E_BUDGET


class StorageFailure(InfluenceError):
    code = ErrorCode.E_STORAGE
    retryable = True


# ============================================================
# Validators
# ============================================================

# Tenant ids end up inside cache keys, so glob and separator characters
# are not allowed.
_TENANT_RE = re.compile(r"^[A-Za-z0-9_.\-]{1,128}$")


def validate_tenant(tenant) -> str:
    if not isinstance(tenant, str) or not tenant:
        raise InvalidInput("Tenant scope is required", ErrorCode.E_TENANT)
    if not _TENANT_RE.match(tenant):
        raise InvalidInput(f"Malformed tenant scope: {tenant!r}", ErrorCode.E_TENANT)
    return tenant


def validate_id(value, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidInput(f"{field_name} is required", ErrorCode.E_MISSING)
    return value


def validate_weight(weight) -> float:
    if isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise InvalidInput("Weight must be a number", ErrorCode.E_WEIGHT)
    if weight < 0 or weight > 100:
        raise InvalidInput("Weight must be between 0 and 100", ErrorCode.E_WEIGHT)
    return float(weight)


def validate_edge_endpoints(source_id, target_id) -> None:
    validate_id(source_id, "source_id")
    validate_id(target_id, "target_id")
    if source_id == target_id:
        raise InvalidInput("Cannot create self-influence edge", ErrorCode.E_SELF_EDGE)


def validate_decay_rate(rate) -> float:
    if isinstance(rate, bool) or not isinstance(rate, (int, float)) or not (0 <= rate < 1):
        raise InvalidInput(f"Decay rate must be in [0, 1), got {rate}")
    return float(rate)


def validate_propagation_params(max_depth, decay_factor) -> None:
    if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 0:
        raise InvalidInput(f"max_depth must be a non-negative int, got {max_depth}")
    if isinstance(decay_factor, bool) or not isinstance(decay_factor, (int, float)):
        raise InvalidInput(f"decay_factor must be a number, got {decay_factor}")
    # >= 1 lets carried weight grow instead of fade
    if not (0 <= decay_factor < 1):
        raise InvalidInput(f"decay_factor must be in [0, 1), got {decay_factor}")
