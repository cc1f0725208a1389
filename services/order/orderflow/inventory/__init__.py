from orderflow.inventory.holds import get_hold_store, reset_hold_store
from orderflow.inventory.reservations import ReservationManager

__all__ = ["ReservationManager", "get_hold_store", "reset_hold_store"]
