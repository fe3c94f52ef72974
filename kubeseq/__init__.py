"""
kubeseq - Ordered, readiness-gated deployment sequencing for Kubernetes.

Applies groups of manifests one at a time, waits for each group's readiness
predicate, and honours per-group failure policies.
"""

__version__ = "0.1.0"
