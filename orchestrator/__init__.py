"""Command-line orchestration for Carebook workflows."""
