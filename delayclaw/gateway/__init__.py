"""DelayClaw flight metadata store and the service in front of it."""

from delayclaw.gateway.base import FlightMetadataGateway
from delayclaw.gateway.github import GitHubFlightGateway
from delayclaw.gateway.memory import InMemoryFlightGateway
from delayclaw.gateway.service import FlightService, ServiceResponse

__all__ = [
    "FlightMetadataGateway",
    "GitHubFlightGateway",
    "InMemoryFlightGateway",
    "FlightService",
    "ServiceResponse",
]
