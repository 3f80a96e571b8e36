"""
WhatsApp device bridge core.

- stores: session, pending-pairing and device metadata stores
- lifecycle: SessionLifecycleManager (create / reconnect / teardown)
- normalize: recipient and identity helpers
- pairing: QR rendering of pairing tokens
"""
