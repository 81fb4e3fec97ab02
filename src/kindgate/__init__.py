"""
KindGate: Safety Validation & Parental Approval for a Child's Companion Device

Every piece of text a child says, and every piece of text the device is
about to say, passes through the SafetyGateway before it is acted upon.

Safety Architecture:
- Pattern-based, auditable filter pipeline (no ML classifiers)
- Per-age-group policies (child, teen, adult)
- Parental review requests with timeouts and safety exceptions
- Fail-safe design (blocks input and falls back on output when unsure)
"""

__version__ = "0.1.0"

from kindgate.config import AgeGroup, AgeGroupPolicy, Settings
from kindgate.safety import (
    ApprovalWorkflow,
    AuditLog,
    ContentFilterPipeline,
    RuleStore,
    SafetyGateway,
    ValidationVerdict,
)

__all__ = [
    "AgeGroup",
    "AgeGroupPolicy",
    "Settings",
    "SafetyGateway",
    "RuleStore",
    "ContentFilterPipeline",
    "AuditLog",
    "ApprovalWorkflow",
    "ValidationVerdict",
    "__version__",
]
