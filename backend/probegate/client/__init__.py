# probegate/client/__init__.py
"""
Client side of the gateway: an httpx client plus the advisory rate
estimator it consults before each call.
"""

from probegate.client.api import ClientRateLimited, GatewayClient, GatewayClientError
from probegate.client.estimator import ClientRateEstimator

__all__ = ["ClientRateEstimator", "ClientRateLimited", "GatewayClient", "GatewayClientError"]
