"""
WalkSafe: Safety-aware pedestrian routing core.

Architecture:
    walksafe/
    ├── providers/       # Map provider adapters, quota, retry, fallback chain
    ├── services/        # Traffic cache, risk scoring, alerts, route risk, scheduler
    ├── jobs/            # Batch jobs (risk recalculation, anonymization, expiry, ETL)
    ├── db/              # SQLAlchemy models, engine, queries
    ├── geo.py           # Coordinates, polygons, region lookup
    ├── exceptions.py    # Error taxonomy
    └── config.py        # Settings

Data Flow:
    Occurrence ingestion → RiskService → Region.risk_index → AlertService → alerts
    Route request → Fallback chain → Quota → Cache → Retry → Provider adapter

Version: 1.0.0
"""

__version__ = "1.0.0"
