"""
oauth — the local authorization-code flow.

  • PKCE verifier / challenge and CSRF state
  • Loopback callback listener (single-shot redirect receiver)
  • Token endpoint client (code exchange and refresh)
  • Error taxonomy shared by the wizard and the stores
"""
