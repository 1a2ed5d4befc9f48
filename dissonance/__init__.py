"""
Dissonance Governance Decision Engine

Version: 1.0.0
License: Apache 2.0

Every evaluation resolves to exactly one of allow, warn or block. When the
engine cannot evaluate something it says so: a rule that raises becomes a
critical violation, and a store that cannot be read raises a typed error
instead of producing a permissive decision.

Components:
- L0Validator: five deterministic safety invariants that gate every request
- Oracle: policy rules, false-positive filtering, circuit breaker, decision
- CircuitBreaker: hourly block counters per (rule, org)
- CalibrationStore / CalibrationIngestor: false-positive feedback and
  windowed FP-rate statistics, with consent and anonymization
- NonceBindingService: one active signed nonce per verified organization

Usage:
    from dissonance import Engine, OracleInput

    engine = Engine.from_config()
    output = engine.oracle.evaluate(OracleInput.from_dict({
        "mode": "pull_request",
        "context": {"repository_name": "acme/api", "branch": "feature/agent-x"},
    }))

    if output.decision.blocked():
        print(output.summary)
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

from .anonymizer import AnonymizedId, Anonymizer, SaltRing
from .calibration import (
    CalibrationIngestor,
    CalibrationStore,
    CalibrationSubmission,
    FPStatistics,
    FPWindow,
    IngestResult,
)
from .circuit_breaker import BreakerStatus, CircuitBreaker
from .config import DissonanceConfig
from .consent import ConsentCheckResult, ConsentService
from .decision import BreakerEvidence, Decision, Outcome, Severity, Violation, make_decision
from .engine import Engine
from .errors import (
    AdapterError,
    BindingExistsError,
    BindingNotFoundError,
    BindingRevokedError,
    BlockCounterError,
    ConsentRequiredError,
    ConsentStoreError,
    DissonanceError,
    FPStoreError,
    IdentityNotVerifiedError,
    IdentityStoreError,
    NonceMismatchError,
    NonceValidationCode,
    NonceValidationError,
    SecretStoreError,
    TrustError,
)
from .l0 import InvariantId, L0Result, L0ValidationInput, L0Validator
from .oracle import Oracle, OracleOutput, OracleReport
from .records import (
    ConsentRecord,
    ConsentResource,
    ConsentState,
    FPEvent,
    NonceBinding,
    OrganizationIdentity,
    VerificationMethod,
)
from .rules import OracleInput, OracleMode, RepositoryContext, Rule, RuleEvaluationError, default_rules
from .security import ValidationError
from .trust import BindingSigner, BindingVerification, GenerateResult, NonceBindingService

__all__ = [
    "__version__",
    # Engine
    "Engine",
    "DissonanceConfig",
    # L0
    "L0Validator",
    "L0ValidationInput",
    "L0Result",
    "InvariantId",
    # Oracle
    "Oracle",
    "OracleInput",
    "OracleMode",
    "OracleOutput",
    "OracleReport",
    "RepositoryContext",
    "Rule",
    "RuleEvaluationError",
    "default_rules",
    "Decision",
    "Outcome",
    "Severity",
    "Violation",
    "BreakerEvidence",
    "make_decision",
    # Circuit breaker
    "CircuitBreaker",
    "BreakerStatus",
    # Calibration
    "CalibrationStore",
    "CalibrationIngestor",
    "CalibrationSubmission",
    "FPEvent",
    "FPStatistics",
    "FPWindow",
    "IngestResult",
    "ConsentService",
    "ConsentCheckResult",
    "ConsentRecord",
    "ConsentResource",
    "ConsentState",
    "Anonymizer",
    "AnonymizedId",
    "SaltRing",
    # Trust
    "NonceBindingService",
    "BindingSigner",
    "BindingVerification",
    "GenerateResult",
    "NonceBinding",
    "OrganizationIdentity",
    "VerificationMethod",
    # Errors
    "DissonanceError",
    "ValidationError",
    "AdapterError",
    "SecretStoreError",
    "BlockCounterError",
    "FPStoreError",
    "ConsentStoreError",
    "IdentityStoreError",
    "TrustError",
    "IdentityNotVerifiedError",
    "BindingExistsError",
    "BindingNotFoundError",
    "BindingRevokedError",
    "NonceMismatchError",
    "ConsentRequiredError",
    "NonceValidationCode",
    "NonceValidationError",
]
