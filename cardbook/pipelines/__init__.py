"""Background pipelines for business-card ingestion.

``ingest`` holds the confidence-gated state machine for a single upload;
``runner`` owns the asyncio tasks that execute it outside the request cycle.
"""
