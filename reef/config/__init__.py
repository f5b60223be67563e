"""Runtime configuration — locating and patching the orchestrator's config."""
