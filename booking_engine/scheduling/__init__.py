from booking_engine.scheduling.availability import AvailabilityResolver

__all__ = ["AvailabilityResolver"]
