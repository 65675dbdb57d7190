"""MeterCore: entitlements, SMS credit ledger, purchases and scheduled dispatch."""

__version__ = "0.1.0"
