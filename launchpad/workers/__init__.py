"""Queue consumers for build and deploy jobs."""
