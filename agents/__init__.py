"""Carebook workflows: queries, live feeds, the patient roster and the session gate."""
