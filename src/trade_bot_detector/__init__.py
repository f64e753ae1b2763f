"""Trade Bot Detector - behavioral bot classification for on-chain trading."""

__version__ = "0.1.0"
