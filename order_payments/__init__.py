"""Order payment settlement service: wallet, bitcoin and monero rails."""

__version__ = "1.0.0"
