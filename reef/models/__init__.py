"""Shared data model for formations.

- Manifest: the desired state, as authored
- FormationState: the durable record of the last successful apply
"""
