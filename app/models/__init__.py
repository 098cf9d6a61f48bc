from app.models.driver import Driver
from app.models.ride import Ride
from app.models.payment import Payment
from app.models.wallet import Wallet, Transaction

__all__ = ["Driver", "Ride", "Payment", "Wallet", "Transaction"]
