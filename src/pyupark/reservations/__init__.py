"""Reservation lifecycle: pricing, payments and the booking state machine."""
