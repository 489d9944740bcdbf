"""
Map provider layer.

Components:
- quota: per-provider call budgets and cost tracking
- retry: exponential backoff with jitter
- base: shared adapter contract + HTTP plumbing
- google / here / mapbox / nominatim: concrete adapters
- factory: builds adapters from settings
- fallback: priority-ordered composite adapter
"""
