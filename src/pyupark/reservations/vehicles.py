"""Vehicle ownership lookup.

Users and vehicles live in an external system; the lifecycle manager only
needs to know who owns a plate and what class it is.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import field_validator

from pyupark.models._base import UparkBaseModel
from pyupark.models.reservation import VehicleType


class RegisteredVehicle(UparkBaseModel):
    number_plate: str
    vehicle_type: VehicleType
    owner_identity: str

    @field_validator("number_plate", "owner_identity")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must be non-empty")
        return stripped


class VehicleRegistry(Protocol):
    async def get_vehicle(self, number_plate: str) -> RegisteredVehicle | None: ...


class InMemoryVehicleRegistry:
    """Plate -> vehicle map."""

    def __init__(self, vehicles: list[RegisteredVehicle] | None = None) -> None:
        self._vehicles: dict[str, RegisteredVehicle] = {}
        for vehicle in vehicles or []:
            self.register(vehicle)

    def register(self, vehicle: RegisteredVehicle) -> None:
        self._vehicles[vehicle.number_plate] = vehicle

    def add(self, number_plate: str, vehicle_type: str | VehicleType, owner_identity: str) -> RegisteredVehicle:
        vehicle = RegisteredVehicle(
            number_plate=number_plate,
            vehicle_type=VehicleType(vehicle_type),
            owner_identity=owner_identity,
        )
        self.register(vehicle)
        return vehicle

    async def get_vehicle(self, number_plate: str) -> RegisteredVehicle | None:
        return self._vehicles.get(number_plate.strip())
