"""Booking lifecycle engine: availability, booking state machine and payment reconciliation."""

__version__ = "1.0.0"
