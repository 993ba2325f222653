"""Background workers: reservation expiry and expired order cleanup."""
from .order_cleanup import run_cleanup, start_order_cleanup
from .reservation_sweeper import run_sweeper, start_reservation_sweeper

__all__ = ["run_cleanup", "run_sweeper", "start_order_cleanup", "start_reservation_sweeper"]
