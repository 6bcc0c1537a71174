"""
oauth — Google OAuth2 credential lifecycle.

Provides:
  • Authorization-URL generation with a signed, expiring state token
  • Callback handling (code → credential exchange)
  • Lazy, on-demand token refresh with compare-and-set writes
  • Revocation / disconnect
  • AuthState computation for the dashboard
"""
