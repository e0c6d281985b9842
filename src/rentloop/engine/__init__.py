"""Rental execution engine — state machine, handover protocol and disputes."""

from rentloop.engine.dispute import DisputeHandler
from rentloop.engine.state_machine import RentalStateMachine

__all__ = ["DisputeHandler", "RentalStateMachine"]
