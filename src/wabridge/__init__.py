"""wabridge - Lightweight WhatsApp send API over a single persistent session.

Modules:
    - config: Settings from ~/.wabridge/config.yaml plus environment overrides
    - addressing: Phone number normalization into recipient addresses
    - credentials: Pluggable stores for session authentication state
    - transport: Gateway session adapters and their lifecycle events
    - session: Lifecycle manager (connect, pair, reconnect, logout)
    - dispatch: Message send pipeline with categorized outcomes
    - pairing: Presenting pairing challenges (QR images, codes)
    - web: FastAPI facade (/api/status, /api/send, /api/pairing)
"""

__version__ = "1.0.0"
