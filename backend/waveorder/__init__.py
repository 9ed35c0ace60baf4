"""WaveOrder billing backend: Stripe subscription webhook reconciliation."""

__version__ = "1.0.0"
