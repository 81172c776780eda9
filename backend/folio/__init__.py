"""Folio - portfolio performance engine (FIFO tax lots, IRR, lens reports)."""

__version__ = "1.0.0"
