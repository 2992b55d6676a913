"""
Guardian - keeps one worker process alive behind an authenticated control plane.

Provides process supervision with backoff and crash-loop cooldown, heartbeat
staleness detection, log capture, and a signed HTTP API with a phone-friendly
control page.
"""

__version__ = "0.1.0"
