"""Pure ops-domain logic: signal classification, alert rules, billing correlation, case reasons."""

from .rag import RULES_VERSION as RAG_RULES_VERSION, build_rag_status, classify, compute_rag_status
from .schema import BillingCorrelation, OpsAlert, OpsAlertsModel, RagStatus

__all__ = [
    "RAG_RULES_VERSION",
    "BillingCorrelation",
    "OpsAlert",
    "OpsAlertsModel",
    "RagStatus",
    "build_rag_status",
    "classify",
    "compute_rag_status",
]
