"""HTTP adapters.

Exposes the loan lifecycle over a small JSON API:
- Create, list and fetch loans
- Approve, invest in and disburse a loan
"""
