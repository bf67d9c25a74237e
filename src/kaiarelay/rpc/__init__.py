"""Kaia node access: JSON-RPC client and relay."""

from kaiarelay.rpc.client import KaiaRpcClient, RpcMethods
from kaiarelay.rpc.relay import Relay

__all__ = ["KaiaRpcClient", "Relay", "RpcMethods"]
