"""
Batch jobs.

- recalculate_risk: single-region and all-regions risk recalculation
- anonymize: location data anonymization + cohort aggregation
- expire_occurrences: collaborative occurrence expiry
- etl_import: bulk import of official occurrence data
"""
