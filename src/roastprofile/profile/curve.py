"""Roast profile curves.

A profile curve is a short, time-ordered list of setpoints. The control loop
asks it for the target temperature and fan speed at a point in time and the
curve answers by linear interpolation between neighbouring setpoints.
"""

from dataclasses import dataclass
from typing import Iterable, List
import logging
import math
import struct

logger = logging.getLogger(__name__)

MAX_SETPOINTS = 10
MAX_TEMPERATURE = 500  # °F
MAX_FAN_SPEED = 100    # %
PWM_MAX = 255
MAX_TIME = 0xFFFFFFFF  # ms, u32 on the wire

PROFILE_VERSION = 1

_HEADER = struct.Struct(">BI")
_SETPOINT = struct.Struct(">III")


@dataclass(frozen=True)
class Setpoint:
    """A single anchor point on a roast curve.

    Attributes:
        time: Milliseconds from the start of the roast
        temperature: Target temperature in Fahrenheit
        fan_speed: Fan speed percentage (0-100)
    """
    time: int
    temperature: int
    fan_speed: int


class ProfileCurve:
    """Piecewise-linear temperature/fan curve over elapsed time."""

    def __init__(self):
        """Initialize with the single dummy setpoint (0, 0, 0)."""
        self._setpoints: List[Setpoint] = []
        self.start_time = 0
        self.version = PROFILE_VERSION
        self.clear()

    @classmethod
    def from_setpoints(cls, setpoints: Iterable[Setpoint]) -> "ProfileCurve":
        """Build a curve holding exactly the given setpoints."""
        curve = cls()
        curve._setpoints = []
        for sp in setpoints:
            curve.add_setpoint(sp.time, sp.temperature, sp.fan_speed)
        if not curve._setpoints:
            curve.clear()
        return curve

    def __len__(self) -> int:
        return len(self._setpoints)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ProfileCurve):
            return NotImplemented
        return self._setpoints == other._setpoints

    def __repr__(self) -> str:
        return f"ProfileCurve({self._setpoints!r})"

    @property
    def setpoints(self) -> List[Setpoint]:
        return list(self._setpoints)

    @property
    def setpoint_count(self) -> int:
        return len(self._setpoints)

    def get_setpoint(self, index: int) -> Setpoint:
        return self._setpoints[index]

    def clear(self) -> None:
        """Reset to the single dummy setpoint (0, 0, 0)."""
        self._setpoints = [Setpoint(0, 0, 0)]

    def copy(self) -> "ProfileCurve":
        curve = ProfileCurve()
        curve.replace_with(self)
        return curve

    def replace_with(self, other: "ProfileCurve") -> None:
        """Replace this curve's setpoints with a copy of another's."""
        self._setpoints = list(other._setpoints)
        self.version = other.version

    def add_setpoint(self, time: int, temp: int, fan_speed: int) -> None:
        """Append a setpoint, clamping temperature and fan speed.

        A curve holds at most ten setpoints. Once full, further setpoints
        are dropped without raising; use ``try_add_setpoint`` to find out.
        """
        self.try_add_setpoint(time, temp, fan_speed)

    def try_add_setpoint(self, time: int, temp: int, fan_speed: int) -> bool:
        """Append a setpoint, returning False if the curve is already full."""
        if len(self._setpoints) >= MAX_SETPOINTS:
            logger.debug(f"Curve full, dropping setpoint at {time}ms")
            return False
        temp = max(0, min(int(temp), MAX_TEMPERATURE))
        fan_speed = max(0, min(int(fan_speed), MAX_FAN_SPEED))
        self._setpoints.append(Setpoint(max(0, min(int(time), MAX_TIME)), temp, fan_speed))
        return True

    @staticmethod
    def validate_setpoint(temp: int, fan_speed: int) -> bool:
        """Check that a temperature (°F) and fan speed (%) are in range."""
        return 0 <= temp <= MAX_TEMPERATURE and 0 <= fan_speed <= MAX_FAN_SPEED

    def start_profile(self, current_temp: float, origin_time: int) -> None:
        """Start the curve at the measured temperature.

        Args:
            current_temp: Measured bean temperature in Fahrenheit
            origin_time: Tick time (ms) that becomes elapsed time zero
        """
        self.start_time = origin_time
        temp = 0 if math.isnan(current_temp) else max(0, min(int(current_temp), MAX_TEMPERATURE))
        first = self._setpoints[0]
        fan_speed = self._setpoints[1].fan_speed if len(self._setpoints) > 1 else first.fan_speed
        self._setpoints[0] = Setpoint(first.time, temp, fan_speed)
        logger.debug(f"Profile started at {origin_time}ms from {temp}°F")

    def _elapsed(self, tick_time: int) -> int:
        return max(0, tick_time - self.start_time)

    def _interpolate(self, elapsed: int, field: str, inclusive: bool) -> float:
        # Temperature looks for the first setpoint strictly after elapsed,
        # fan speed for the first one at or after it.
        for i, sp in enumerate(self._setpoints):
            if sp.time > elapsed or (inclusive and sp.time == elapsed):
                if i == 0:
                    return getattr(sp, field)
                prev = self._setpoints[i - 1]
                prev_value = getattr(prev, field)
                next_value = getattr(sp, field)
                if sp.time == prev.time:
                    return next_value
                ratio = (elapsed - prev.time) / (sp.time - prev.time)
                return prev_value + (next_value - prev_value) * ratio
        return getattr(self._setpoints[-1], field)

    def target_temperature(self, tick_time: int) -> int:
        """Target temperature (°F) at a tick time relative to start_time."""
        return int(self._interpolate(self._elapsed(tick_time), "temperature", inclusive=False))

    def target_temperature_at(self, time_ms: int) -> int:
        """Target temperature (°F) at an absolute curve time, ignoring start_time."""
        return int(self._interpolate(max(0, time_ms), "temperature", inclusive=False))

    def target_fan_speed(self, tick_time: int) -> int:
        """Target fan speed as a PWM duty value (0-255)."""
        percent = self._interpolate(self._elapsed(tick_time), "fan_speed", inclusive=True)
        return int(percent * PWM_MAX / 100)

    def final_target_temperature(self) -> int:
        return self._setpoints[-1].temperature

    def progress(self, tick_time: int) -> int:
        """Roast progress percentage (0-100)."""
        elapsed = self._elapsed(tick_time)
        last_time = self._setpoints[-1].time
        if elapsed >= last_time:
            return 100
        return int(elapsed / last_time * 100)

    def serialize(self) -> bytes:
        """Flatten to the stored binary layout.

        Layout: version byte, big-endian u32 setpoint count, then
        big-endian u32 time, temperature and fan speed per setpoint.
        """
        setpoints = self._setpoints[:MAX_SETPOINTS]
        parts = [_HEADER.pack(self.version, len(setpoints))]
        for sp in setpoints:
            parts.append(_SETPOINT.pack(sp.time, sp.temperature, sp.fan_speed))
        return b"".join(parts)

    def deserialize(self, data: bytes) -> bool:
        """Load setpoints from the stored binary layout.

        The curve is left untouched if the count is 0 or above ten, or if
        the buffer is too short for the count it declares.

        Returns:
            True if the curve was replaced
        """
        if len(data) < _HEADER.size:
            logger.warning(f"Profile blob too short ({len(data)} bytes)")
            return False
        version, count = _HEADER.unpack_from(data)
        if count == 0 or count > MAX_SETPOINTS:
            logger.warning(f"Rejecting profile blob with {count} setpoints")
            return False
        if len(data) < _HEADER.size + count * _SETPOINT.size:
            logger.warning(f"Profile blob truncated: {len(data)} bytes for {count} setpoints")
            return False

        setpoints = []
        for i in range(count):
            offset = _HEADER.size + i * _SETPOINT.size
            setpoints.append(Setpoint(*_SETPOINT.unpack_from(data, offset)))
        self._setpoints = setpoints
        self.version = version
        return True


def sample_curve(curve: ProfileCurve, width: int = 480, height: int = 170) -> List[int]:
    """Sample a curve's temperature shape for a waveform display.

    Samples run from the end of the curve back to zero, so a display that
    shifts new points in from the right draws the curve left-to-right.

    Args:
        curve: Curve to sample
        width: Number of samples
        height: Value of the final target temperature after scaling

    Returns:
        List of scaled temperatures, empty if the curve cannot be plotted
    """
    if curve.setpoint_count < 2:
        logger.warning("Curve has fewer than 2 setpoints, skipping plot")
        return []
    final = curve.get_setpoint(curve.setpoint_count - 1)
    if final.temperature == 0:
        logger.warning("Final temperature is 0, cannot plot")
        return []

    samples = []
    for i in range(width):
        time_at_x = final.time * (width - 1 - i) // width
        temp = curve.target_temperature_at(time_at_x)
        samples.append(max(0, min(height, temp * height // final.temperature)))
    return samples
