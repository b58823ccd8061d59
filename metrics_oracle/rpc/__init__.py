"""Solana JSON-RPC access"""

from .endpoint_health import EndpointHealthStore, RpcEndpoint
from .gateway import RpcGateway, AccountBatch, SignatureInfo

__all__ = ['EndpointHealthStore', 'RpcEndpoint', 'RpcGateway', 'AccountBatch', 'SignatureInfo']
