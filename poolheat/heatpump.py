# SPDX-License-Identifier: MPL-2.0
"""
Heat Pump Device Gateway Client Module

This module handles communication with the pool heat pump through a device
command gateway. The gateway accepts data-point commands such as
{"code": "Power", "value": true} and reports status as a list of code/value
pairs, which are parsed here once into a DeviceStatus.

Request signing and token refresh are handled by the gateway; this client
sends a pre-issued bearer token.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from poolheat.exceptions import DeviceError

logger = logging.getLogger(__name__)

# Status data-point codes
CODE_POWER = "Power"
CODE_SET_TEMP = "SetTemp"
CODE_WATER_TEMP = "WaterTemp"
CODE_MODE = "SetMode"
CODE_FAN_SPEED = "Speed"


@dataclass(frozen=True)
class DeviceStatus:
    """
    Current status of the heat pump.

    Attributes:
        power: Whether the pump is switched on (None if not reported)
        set_temp: Target temperature in Celsius
        water_temp: Measured water temperature in Celsius
        mode: Operating mode as reported by the device
        fan_speed: Fan speed percentage
    """
    power: Optional[bool] = None
    set_temp: Optional[float] = None
    water_temp: Optional[float] = None
    mode: Optional[str] = None
    fan_speed: Optional[int] = None

    @classmethod
    def from_datapoints(cls, datapoints: List[Dict[str, Any]]) -> "DeviceStatus":
        """
        Parse the gateway's list of {"code": ..., "value": ...} pairs.

        Unknown codes are ignored.

        Raises:
            DeviceError: If a known code carries a value of the wrong type
        """
        values: Dict[str, Any] = {}

        for item in datapoints:
            code = item.get("code")
            value = item.get("value")
            try:
                if code == CODE_POWER:
                    values["power"] = bool(value)
                elif code == CODE_SET_TEMP:
                    values["set_temp"] = float(value)
                elif code == CODE_WATER_TEMP:
                    values["water_temp"] = float(value)
                elif code == CODE_MODE:
                    values["mode"] = str(value)
                elif code == CODE_FAN_SPEED:
                    values["fan_speed"] = int(value)
                else:
                    logger.debug(f"Ignoring unknown status code {code!r}")
            except (TypeError, ValueError) as e:
                raise DeviceError(f"Invalid value for {code}: {value!r} ({e})")

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "power": self.power,
            "set_temp": self.set_temp,
            "water_temp": self.water_temp,
            "mode": self.mode,
            "fan_speed": self.fan_speed,
        }

    def __repr__(self) -> str:
        power = {True: "on", False: "off"}.get(self.power, "unknown")
        return (f"DeviceStatus(power={power}, set={self.set_temp}°C, "
                f"water={self.water_temp}°C, mode={self.mode})")


class HeatPumpClient:
    """
    Client for the heat pump device gateway.

    Attributes:
        base_url (str): Gateway base URL
        device_id (str): Device identifier at the gateway
        timeout (int): Request timeout in seconds
        power_code (str): Data-point code for power
        temperature_code (str): Data-point code for the target temperature
        session (requests.Session): HTTP session for connection pooling
    """

    def __init__(self, base_url: str, device_id: str, access_token: str,
                 timeout: int = 10,
                 power_code: str = CODE_POWER,
                 temperature_code: str = CODE_SET_TEMP):
        """
        Initialize the heat pump client.

        Args:
            base_url: Gateway base URL
            device_id: Device identifier at the gateway
            access_token: Bearer token for the gateway
            timeout: Request timeout in seconds (default: 10)
            power_code: Data-point code for power (default: Power)
            temperature_code: Data-point code for temperature (default: SetTemp)
        """
        if not device_id:
            raise ValueError("device_id cannot be empty")

        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.timeout = timeout
        self.power_code = power_code
        self.temperature_code = temperature_code
        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {access_token}',
        })

    def get_status(self) -> DeviceStatus:
        """
        Read and parse the current device status.

        Raises:
            DeviceError: If the request fails or the gateway reports an error
        """
        url = f"{self.base_url}/devices/{self.device_id}/status"
        logger.debug(f"Getting status for {self.device_id}")
        data = self._request("GET", url)

        result = data.get("result")
        if not isinstance(result, list):
            raise DeviceError(f"Invalid status response: {data!r}")

        status = DeviceStatus.from_datapoints(result)
        logger.debug(f"Retrieved status: {status}")
        return status

    def set_power(self, on: bool) -> None:
        """
        Switch the pump on or off.

        Raises:
            DeviceError: If the command fails
        """
        self.send_commands([{"code": self.power_code, "value": bool(on)}])

    def set_temperature(self, celsius: float) -> None:
        """
        Set the target temperature. The device accepts whole degrees only.

        Raises:
            DeviceError: If the command fails
        """
        self.send_commands([{"code": self.temperature_code, "value": int(round(celsius))}])

    def send_commands(self, commands: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Send data-point commands to the device.

        Args:
            commands: List of {"code": ..., "value": ...} dictionaries

        Returns:
            Gateway response dictionary

        Raises:
            DeviceError: If the request fails or the gateway rejects the command
        """
        url = f"{self.base_url}/devices/{self.device_id}/commands"
        logger.debug(f"Sending commands {commands} to {self.device_id}")
        data = self._request("POST", url, {"commands": commands})
        logger.debug("Command executed successfully")
        return data

    def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()

        except requests.exceptions.HTTPError as e:
            error_msg = f"HTTP error: {e.response.status_code} - {e.response.text}"
            logger.error(error_msg)
            raise DeviceError(error_msg)

        except requests.exceptions.Timeout:
            error_msg = f"Request timed out after {self.timeout} seconds"
            logger.error(error_msg)
            raise DeviceError(error_msg)

        except requests.exceptions.RequestException as e:
            error_msg = f"Request failed: {str(e)}"
            logger.error(error_msg)
            raise DeviceError(error_msg)

        except ValueError as e:
            error_msg = f"Invalid JSON response: {str(e)}"
            logger.error(error_msg)
            raise DeviceError(error_msg)

        if not isinstance(data, dict):
            raise DeviceError(f"Unexpected response: {data!r}")

        if not data.get("success", False):
            error_msg = f"Device rejected request: {data.get('msg') or data.get('code') or 'unknown error'}"
            logger.error(error_msg)
            raise DeviceError(error_msg)

        return data

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
        logger.debug("Heat pump client session closed")

    def __enter__(self) -> 'HeatPumpClient':
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
