"""Exceptions raised across the monitor."""


class ProviderError(Exception):
    """The blockchain data provider could not answer (timeout, HTTP error, network)."""


class WalletNotMonitoredError(LookupError):
    """An operation targeted an address that is not being monitored."""

    def __init__(self, address: str):
        super().__init__(f"Wallet {address} is not being monitored")
        self.address = address


class InvalidAlertError(ValueError):
    """An alert definition has an unknown type or an unusable amount."""


class InvalidAddressError(ValueError):
    """A wallet address is not a 0x-prefixed 20-byte hex string."""
