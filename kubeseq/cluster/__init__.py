"""
kubeseq.cluster - The cluster API boundary.

ClusterClient is the abstract interface; KubernetesClusterClient talks to a
real API server. Tests substitute an in-memory implementation.
"""

from .base import (
    ClusterClient,
    DeploymentStatus,
    ExecResult,
    JobStatus,
    PodStatus,
    PVCStatus,
    get_nested_field,
)

__all__ = [
    "ClusterClient",
    "DeploymentStatus",
    "ExecResult",
    "JobStatus",
    "PodStatus",
    "PVCStatus",
    "get_nested_field",
]
