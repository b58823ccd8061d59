from .account_resolver import AccountResolver, ResolvedVaults

__all__ = ['AccountResolver', 'ResolvedVaults']
