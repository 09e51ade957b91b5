"""
scheduler/ — Relay window scheduling

Time arithmetic lives in scheduler.window; the timer that flips the relay
on and off is RelayScheduler in scheduler.scheduler.
"""

from chatbridge.scheduler.window import ScheduleWindow, next_local_midnight, next_occurrence

__all__ = ["ScheduleWindow", "next_local_midnight", "next_occurrence"]
