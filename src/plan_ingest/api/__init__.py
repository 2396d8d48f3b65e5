"""HTTP routers for the plan ingestion service."""
