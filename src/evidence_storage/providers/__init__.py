"""Storage provider adapters.

Adapters are imported by the registry only when selected so that unused cloud
SDKs are never loaded.
"""
