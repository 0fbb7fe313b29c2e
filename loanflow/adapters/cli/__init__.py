"""Command-line interface adapters.

Provides CLI commands for operating on loans:
- create / approve / invest / disburse
- get / list
"""
