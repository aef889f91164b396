"""
Sightline - Automated visibility reconciliation for virtual tabletops.

For every ordered pair of tokens (observer, target) the engine keeps one of
four detectability states:

    observed < concealed < hidden < undetected

Components:
- core: state types, world queries, the visibility calculator, the map store
- overrides: pinned pair values, staleness validation, conflict analysis
- engine: change detection, batch scheduling, refresh notification
- api: HTTP surface over the visibility service
"""

__version__ = "0.1.0"
