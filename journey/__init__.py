"""Delivery journey simulation"""

from .simulator import (
    JOURNEY_STEPS,
    JourneyError,
    JourneyStatus,
    JourneyStep,
    JourneyUpdate,
    JourneyOutcome,
    JourneySimulator,
    JourneyRegistry,
    build_journey,
)

__all__ = [
    'JOURNEY_STEPS',
    'JourneyError',
    'JourneyStatus',
    'JourneyStep',
    'JourneyUpdate',
    'JourneyOutcome',
    'JourneySimulator',
    'JourneyRegistry',
    'build_journey',
]
