"""
Core services.

Components:
- traffic_cache: TTL cache of provider responses
- region_lookup: database-backed point-in-region resolution
- risk_service: region risk index computation
- alert_service: speed-aware alert evaluation
- route_service: route risk analysis and safe route selection
- scheduler: periodic maintenance jobs
"""
