from docintel.auth.token import Identity, get_current_identity, identity_from_claims, verify_token

__all__ = ["Identity", "get_current_identity", "identity_from_claims", "verify_token"]
