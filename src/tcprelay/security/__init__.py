"""Source address accounting for inbound connections."""

from tcprelay.security.ratelimit import RateTracker

__all__ = ["RateTracker"]
