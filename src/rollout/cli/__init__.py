"""Command-line interface (``rollout``)."""
