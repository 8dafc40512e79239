"""
connectors — data-source types and their OAuth providers.

Provides:
  • Static connector descriptors and the capability resolver
  • Per-provider OAuth quirks (auth URL parameters, account lookup)
  • Fernet encryption of tokens and client secrets at rest
  • Active-token lookup with auto-refresh, and disconnect

Each provider (GitHub, Google, …) is a subclass of BaseOAuthHandler.
"""
