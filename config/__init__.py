"""
Runtime configuration for durable_queue.

  - `public_config.py` (non-sensitive defaults)
  - `secret_config.py` (secrets loaded from env / `.env.secrets`)
  - `settings.py` exposes `get_settings()` and `SETTINGS`
"""
