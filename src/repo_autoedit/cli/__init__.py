"""Command-line interface for repo-autoedit."""
