"""Zone administration service: delivery-zone ingestion, staging and reconciliation."""
