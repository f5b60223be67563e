"""Reconciliation — keeping installed formations consistent with what was applied.

This package provides:
- The state store: durable records of each formation's last apply
- Migration planning: what an update to a new manifest would change
- Drift detection: divergence between the record and the live runtime
- Repair: restoring drifted resources from the record (and source tree)
"""
