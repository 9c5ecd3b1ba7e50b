"""
Utility modules for the reminder engine.

This package contains shared utilities used across the application:
- crypto: VAPID and subscriber key import
- vapid: VAPID assertion signing
- webpush_encryption: "aesgcm" payload encryption
- logging_config: Named loggers
- time_utils: Naive UTC helpers
"""
