"""
Roast Control Module

This module provides the roaster state machine. It follows the live
profile curve owned by the catalog and publishes the target temperature,
fan duty and progress for the heater and fan drivers to act on.
"""

import logging
import math
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..catalog import ProfileCatalog
from ..profile.curve import PWM_MAX

logger = logging.getLogger(__name__)


class RoasterState(Enum):
    """Roaster state machine states"""
    IDLE = 0
    START_ROAST = 1
    ROASTING = 2
    COOLING = 3
    ERROR = 4


class RoastController:
    """Drives a roast along the catalog's live profile"""

    def __init__(self, catalog: ProfileCatalog,
                 read_temperature: Callable[[], Optional[float]],
                 elapsed_millis: Callable[[], int],
                 config: Optional[Dict[str, Any]] = None,
                 display: Optional[Callable[[int, int], None]] = None):
        """Initialize roast controller

        Args:
            catalog: Catalog whose live profile is followed
            read_temperature: Returns bean temperature in °F, None on a failed read
            elapsed_millis: Monotonic millisecond clock
            config: The ``roaster`` configuration section
            display: Optional sink receiving (final target °F, progress %)
        """
        config = config or {}
        self.catalog = catalog
        self.read_temperature = read_temperature
        self.elapsed_millis = elapsed_millis
        self.display = display

        self.loop_interval = config.get("loop_interval", 1.0)
        self.cooling_target = config.get("cooling_target", 145)
        self.max_cooling_time = config.get("max_cooling_time", 1800000)
        self.max_safe_temp = config.get("max_safe_temp", 500.0)
        self.sensor_fault_temp = config.get("sensor_fault_temp", 600.0)
        self.max_bad_readings = config.get("max_bad_readings", 5)

        self.state = RoasterState.IDLE
        self.current_temp = 0.0
        self.target_temp = 0
        self.fan_duty = 0
        self.progress = 0
        self.heater_enabled = False
        self.bad_readings = 0
        self._cooling_started = 0

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def profile(self):
        return self.catalog.live_profile

    def start_roast(self) -> bool:
        """Request a roast start on the next tick

        Returns:
            False if the roaster is busy or in error
        """
        with self._lock:
            if self.state not in (RoasterState.IDLE, RoasterState.COOLING):
                logger.warning(f"Cannot start roast from {self.state.name}")
                return False
            self.state = RoasterState.START_ROAST
            logger.info("Start roast requested")
            return True

    def stop_roast(self) -> None:
        """End the roast early and cool down"""
        with self._lock:
            if self.state in (RoasterState.START_ROAST, RoasterState.ROASTING):
                self._enter_cooling(self.elapsed_millis())

    def reset(self) -> None:
        """Return to idle, clearing an error"""
        with self._lock:
            self.state = RoasterState.IDLE
            self.bad_readings = 0
            self._idle_outputs()
            logger.info("Roaster reset to IDLE")

    def _idle_outputs(self) -> None:
        self.heater_enabled = False
        self.fan_duty = 0
        self.target_temp = 0
        self.progress = 0

    def _enter_cooling(self, now: int) -> None:
        self.heater_enabled = False
        self.target_temp = self.cooling_target
        self.fan_duty = PWM_MAX
        self.progress = 0
        self._cooling_started = now
        self.state = RoasterState.COOLING
        logger.info("Roast complete -> cooling")

    def _enter_error(self, reason: str) -> None:
        self.heater_enabled = False
        self.fan_duty = PWM_MAX
        self.target_temp = 0
        self.state = RoasterState.ERROR
        logger.error(f"Roaster error: {reason}")

    def _update_temperature(self) -> bool:
        """Read the sensor. Returns False once readings are considered failed."""
        reading = self.read_temperature()
        if reading is None or math.isnan(reading) or reading >= self.sensor_fault_temp:
            self.bad_readings += 1
            logger.warning(f"Bad temperature reading {reading} ({self.bad_readings}/{self.max_bad_readings})")
            if self.bad_readings >= self.max_bad_readings:
                self._enter_error("temperature sensor failure")
                return False
            return True

        self.bad_readings = 0
        self.current_temp = reading
        if reading > self.max_safe_temp:
            self._enter_error(f"temperature {reading:.1f}°F above safe limit")
            return False
        return True

    def step(self) -> RoasterState:
        """Run one tick of the state machine

        Returns:
            State after the tick
        """
        with self._lock:
            now = self.elapsed_millis()
            if self.state != RoasterState.ERROR:
                self._update_temperature()

            if self.state == RoasterState.IDLE:
                self._idle_outputs()

            elif self.state == RoasterState.START_ROAST:
                self.fan_duty = self.profile.target_fan_speed(now)
                self.profile.start_profile(self.current_temp, now)
                self.heater_enabled = True
                self.state = RoasterState.ROASTING
                logger.info(f"Roast started at {self.current_temp:.1f}°F")

            elif self.state == RoasterState.ROASTING:
                self.target_temp = self.profile.target_temperature(now)
                self.fan_duty = self.profile.target_fan_speed(now)
                self.progress = self.profile.progress(now)
                self.heater_enabled = True
                logger.debug(f"Target {self.target_temp}°F, fan {self.fan_duty}, progress {self.progress}%")
                if self.current_temp >= self.profile.final_target_temperature():
                    self._enter_cooling(now)

            elif self.state == RoasterState.COOLING:
                self.heater_enabled = False
                cooled = self.current_temp <= self.cooling_target
                timed_out = now - self._cooling_started >= self.max_cooling_time
                if cooled or timed_out:
                    if timed_out and not cooled:
                        logger.warning("Cooling timed out")
                    self.state = RoasterState.IDLE
                    self._idle_outputs()
                    logger.info("Cooling finished")

            if self.display is not None:
                self.display(self.profile.final_target_temperature(), self.progress)

            return self.state

    def _control_loop(self) -> None:
        """Main control loop"""
        while self._running:
            try:
                self.step()
            except Exception as e:
                logger.error(f"Control loop error: {e}")
                with self._lock:
                    self._enter_error(str(e))
            time.sleep(self.loop_interval)

    def start(self) -> None:
        """Start the control loop thread"""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._control_loop)
        self._thread.daemon = True
        self._thread.start()
        logger.info("Control loop started")

    def shutdown(self) -> None:
        """Stop the control loop thread with the heater off"""
        if not self._running:
            return
        self._running = False
        if self._thread:
            self._thread.join()
            self._thread = None
        with self._lock:
            self.heater_enabled = False
        logger.info("Control loop stopped")

    def get_status(self) -> Dict[str, Any]:
        """Get current roast status

        Returns:
            Dictionary with state, temperatures, outputs and profile info
        """
        with self._lock:
            return {
                "state": self.state.name,
                "running": self._running,
                "temps": {
                    "current": round(self.current_temp, 1),
                    "setpoint": self.target_temp
                },
                "control": {
                    "heater": self.heater_enabled,
                    "pwmFan": self.fan_duty
                },
                "profile": {
                    "id": self.catalog.active_id,
                    "progress": self.progress,
                    "setpointCount": self.profile.setpoint_count,
                    "finalTemp": self.profile.final_target_temperature()
                },
                "safety": {
                    "badReadings": self.bad_readings
                }
            }
