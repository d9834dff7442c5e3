"""Identity provider boundary and its Supabase adapter."""

from trustudsel.identity.provider import IdentityProvider, ProviderSession, SignUpResult
from trustudsel.identity.supabase_provider import SupabaseIdentityProvider

__all__ = [
    "IdentityProvider",
    "ProviderSession",
    "SignUpResult",
    "SupabaseIdentityProvider",
]
