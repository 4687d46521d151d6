"""Bagvo order service: checkout, stock reconciliation and the order lifecycle."""
