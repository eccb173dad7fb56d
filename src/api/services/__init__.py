"""Business-logic layer for the MEL engine.

- snapshot_service.py (equipment + service-order snapshot with feed fallback)
- mel_service.py (availability, sector views, reconciliation sweep, alert feed)
- mel_rules_service.py (rule and sector-mapping administration)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
