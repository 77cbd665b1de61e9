"""
Profile Catalog Module

This module keeps the persistent collection of named roast profiles in a
key/value store, tracks which one is active, and owns the recovery policy
for a store that is short on space.

Persisted layout:
    pf_<id>       binary curve (see ProfileCurve.serialize)
    pm_<id>       JSON metadata {"id": ..., "name": ...}
    profile_ids   comma-joined ids in insertion order
    active_id     id of the active profile

Saving is a two-step commit: the curve is written first and the id list
second. A save that dies between the two leaves an id without data, which
``ensure_default`` drops on the next start.
"""

import base64
import json
import logging
import secrets
import threading
from dataclasses import dataclass, field
from enum import Enum
from collections.abc import Mapping, Sequence
from typing import Any, Dict, List, Optional, Tuple

from ..profile import ProfileCurve, Setpoint, MAX_SETPOINTS
from ..storage import KeyValueStore, StorageError

logger = logging.getLogger(__name__)

DATA_PREFIX = "pf_"
META_PREFIX = "pm_"
IDS_KEY = "profile_ids"
ACTIVE_KEY = "active_id"

ID_LENGTH = 8
MAX_ID_LENGTH = 12  # prefix + id must fit the 15 character key limit
MAX_NAME_LENGTH = 20
DEFAULT_NAME = "Unnamed"

# Default curve, times in seconds
DEFAULT_PROFILE = {
    "name": "Default",
    "setpoints": [
        {"time": 0, "temp": 200, "fanSpeed": 30},
        {"time": 180, "temp": 350, "fanSpeed": 50},
        {"time": 420, "temp": 400, "fanSpeed": 70},
        {"time": 600, "temp": 444, "fanSpeed": 80},
    ]
}


class ProfileError(Enum):
    """Reasons a catalog operation can fail"""
    INVALID_INPUT = "invalid_input"
    SETPOINT_OUT_OF_BOUNDS = "setpoint_out_of_bounds"
    NOT_FOUND = "not_found"
    CANNOT_DELETE_ACTIVE = "cannot_delete_active"
    EMPTY_ID = "empty_id"
    STORAGE_WRITE_FAILED = "nvs_write_failed"


@dataclass
class ProfileOperationResult:
    """Outcome of a catalog operation"""
    success: bool
    id: str = ""
    error: Optional[ProfileError] = None
    curve: Optional[ProfileCurve] = None

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, profile_id: str, curve: Optional[ProfileCurve] = None) -> "ProfileOperationResult":
        return cls(True, profile_id, None, curve)

    @classmethod
    def fail(cls, error: ProfileError, profile_id: str = "") -> "ProfileOperationResult":
        return cls(False, profile_id, error)


@dataclass
class ProfileSummary:
    id: str
    name: str
    active: bool


@dataclass
class ProfileDetail:
    """Stored profile as shown to the API layer (times in seconds)"""
    id: str
    name: str
    active: bool
    setpoints: List[Dict[str, int]] = field(default_factory=list)


def generate_id() -> str:
    """Generate a short profile id.

    64 random bits, base-32 encoded (RFC 4648 alphabet) and cut to the
    first 8 characters so the prefixed key fits the store's key limit.
    """
    raw = secrets.randbits(64).to_bytes(8, "big")
    return base64.b32encode(raw).decode("ascii").rstrip("=")[:ID_LENGTH]


def data_key(profile_id: str) -> str:
    return DATA_PREFIX + profile_id


def meta_key(profile_id: str) -> str:
    return META_PREFIX + profile_id


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not value.is_integer():
        return None
    return int(value)


def build_curve(curve_spec: Any) -> Tuple[Optional[ProfileCurve], Optional[ProfileError]]:
    """Validate a curve description and build a ProfileCurve from it.

    Args:
        curve_spec: A ProfileCurve, or a sequence of Setpoint objects (times
            in ms) or mappings with ``time`` (seconds), ``temp`` and
            ``fanSpeed`` keys

    Returns:
        Tuple of (curve, None) on success or (None, error)
    """
    if isinstance(curve_spec, ProfileCurve):
        curve_spec = curve_spec.setpoints
    if isinstance(curve_spec, (str, bytes)) or not isinstance(curve_spec, Sequence):
        logger.error("Setpoints must be a list")
        return None, ProfileError.INVALID_INPUT
    if not 1 <= len(curve_spec) <= MAX_SETPOINTS:
        logger.error(f"Profile needs 1-{MAX_SETPOINTS} setpoints, got {len(curve_spec)}")
        return None, ProfileError.INVALID_INPUT

    setpoints = []
    for item in curve_spec:
        if isinstance(item, Setpoint):
            time_ms, temp, fan = item.time, item.temperature, item.fan_speed
        elif isinstance(item, Mapping):
            seconds = _as_int(item.get("time"))
            temp = _as_int(item.get("temp", item.get("temperature")))
            fan = _as_int(item.get("fanSpeed", item.get("fan_speed")))
            if seconds is None or temp is None or fan is None or seconds < 0:
                logger.error(f"Malformed setpoint: {item}")
                return None, ProfileError.INVALID_INPUT
            time_ms = seconds * 1000
        else:
            logger.error(f"Malformed setpoint: {item!r}")
            return None, ProfileError.INVALID_INPUT

        # Equal times are allowed, going backwards is not
        if setpoints and time_ms < setpoints[-1].time:
            logger.error(f"Setpoint at {time_ms}ms comes before {setpoints[-1].time}ms")
            return None, ProfileError.INVALID_INPUT
        if not ProfileCurve.validate_setpoint(temp, fan):
            logger.error(f"Setpoint out of bounds: {temp}°F, {fan}%")
            return None, ProfileError.SETPOINT_OUT_OF_BOUNDS
        setpoints.append(Setpoint(time_ms, temp, fan))

    return ProfileCurve.from_setpoints(setpoints), None


class ProfileCatalog:
    """Persistent collection of roast profiles with one active selection"""

    def __init__(self, store: KeyValueStore, live_profile: Optional[ProfileCurve] = None,
                 write_retries: int = 3, emergency_eviction: bool = True,
                 default_profile: Optional[Dict[str, Any]] = None):
        """Initialize the catalog

        Args:
            store: Key/value store holding the profiles
            live_profile: Curve used by the control loop; activating a
                profile replaces its setpoints in place
            write_retries: Extra attempts after a failed data write
            emergency_eviction: Delete the oldest profile when retries fail
            default_profile: Profile created by ensure_default on an empty
                catalog, as {"name": ..., "setpoints": [...]}
        """
        self.store = store
        self.live_profile = live_profile if live_profile is not None else ProfileCurve()
        self.write_retries = write_retries
        self.emergency_eviction = emergency_eviction
        self.default_profile = default_profile or DEFAULT_PROFILE

        # Single writer for every mutation
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, store: KeyValueStore, config: Dict[str, Any],
                    live_profile: Optional[ProfileCurve] = None) -> "ProfileCatalog":
        """Create a catalog from the ``catalog`` section of the configuration"""
        catalog_config = config.get("catalog", {})
        return cls(
            store,
            live_profile=live_profile,
            write_retries=catalog_config.get("write_retries", 3),
            emergency_eviction=catalog_config.get("emergency_eviction", True),
            default_profile=catalog_config.get("default_profile")
        )

    # Index helpers

    def profile_ids(self) -> List[str]:
        csv = self.store.get_string(IDS_KEY, "")
        return [token.strip() for token in csv.split(",") if token.strip()]

    def _set_profile_ids(self, ids: List[str]) -> bool:
        value = ",".join(ids)
        if not value:
            self._remove(IDS_KEY)
            return True
        return self._put_string(IDS_KEY, value) > 0

    @property
    def active_id(self) -> str:
        return self.store.get_string(ACTIVE_KEY, "")

    def _set_active_id(self, profile_id: str) -> None:
        written = self._put_string(ACTIVE_KEY, profile_id)
        if written == 0:
            logger.error(f"Failed to write active id {profile_id}")
        else:
            logger.debug(f"Set active id to {profile_id} ({written} bytes)")

    def exists(self, profile_id: str) -> bool:
        return bool(profile_id) and self.store.is_key(data_key(profile_id))

    # Store wrappers: backend errors count as a failed write

    def _put_bytes(self, key: str, data: bytes) -> int:
        try:
            return self.store.put_bytes(key, data)
        except StorageError as e:
            logger.error(f"Write to '{key}' failed: {e}")
            return 0

    def _put_string(self, key: str, value: str) -> int:
        try:
            return self.store.put_string(key, value)
        except StorageError as e:
            logger.error(f"Write to '{key}' failed: {e}")
            return 0

    def _remove(self, key: str) -> None:
        try:
            self.store.remove(key)
        except StorageError as e:
            logger.error(f"Remove of '{key}' failed: {e}")

    @staticmethod
    def _check_id(profile_id: str) -> Optional[ProfileError]:
        if not profile_id:
            return ProfileError.EMPTY_ID
        if len(profile_id) > MAX_ID_LENGTH or "," in profile_id:
            return ProfileError.INVALID_INPUT
        return None

    # Metadata

    def _load_name(self, profile_id: str) -> str:
        meta = self.store.get_string(meta_key(profile_id), "")
        if not meta:
            return ""
        try:
            return str(json.loads(meta).get("name", ""))
        except (ValueError, AttributeError):
            logger.warning(f"Unreadable metadata for {profile_id}")
            return ""

    def _save_meta(self, profile_id: str, name: str) -> bool:
        meta = json.dumps({"id": profile_id, "name": name})
        if self._put_string(meta_key(profile_id), meta) == 0:
            logger.warning(f"Failed to write metadata for {profile_id}")
            return False
        return True

    # Writes

    def _evict_oldest(self, keep_id: str) -> Optional[str]:
        """Delete the oldest profile that is neither being written nor active"""
        active = self.active_id
        ids = self.profile_ids()
        victim = next((i for i in ids if i != keep_id and i != active), None)
        if victim is None:
            logger.warning("No profile available to evict")
            return None

        logger.warning(f"Deleting {victim} to free space")
        self._remove(data_key(victim))
        self._remove(meta_key(victim))
        self._set_profile_ids([i for i in ids if i != victim])
        return victim

    def _write_data(self, profile_id: str, blob: bytes) -> int:
        key = data_key(profile_id)
        written = self._put_bytes(key, blob)
        if written:
            return written

        logger.warning(f"First write of {profile_id} failed, retrying...")
        for attempt in range(self.write_retries):
            # A corrupt partial entry can block the rewrite
            self._remove(key)
            written = self._put_bytes(key, blob)
            if written:
                logger.info(f"Write of {profile_id} succeeded on retry {attempt + 1}")
                return written

        if self.emergency_eviction:
            logger.warning("Retries failed, attempting cleanup...")
            if self._evict_oldest(profile_id) is not None:
                written = self._put_bytes(key, blob)
        return written

    def _save(self, profile_id: str, name: str, curve: ProfileCurve,
              activate: bool) -> ProfileOperationResult:
        blob = curve.serialize()
        had_data = self.exists(profile_id)
        had_meta = self.store.is_key(meta_key(profile_id))
        if self._write_data(profile_id, blob) == 0:
            logger.error(f"Storage write for {profile_id} completely failed")
            return ProfileOperationResult.fail(ProfileError.STORAGE_WRITE_FAILED, profile_id)
        logger.debug(f"Stored {len(blob)} bytes for {profile_id}")

        self._save_meta(profile_id, name)

        ids = self.profile_ids()
        if profile_id not in ids:
            if not self._set_profile_ids(ids + [profile_id]):
                logger.error(f"Failed to index {profile_id}, rolling back")
                # Only undo keys this save created
                if not had_data:
                    self._remove(data_key(profile_id))
                if not had_meta:
                    self._remove(meta_key(profile_id))
                return ProfileOperationResult.fail(ProfileError.STORAGE_WRITE_FAILED, profile_id)

        if activate:
            logger.debug(f"Activating {profile_id}")
            self.live_profile.replace_with(curve)
            self._set_active_id(profile_id)

        logger.info(f"Saved profile {profile_id} ('{name}', {curve.setpoint_count} setpoints)")
        return ProfileOperationResult.ok(profile_id, curve)

    def create(self, name: str, curve_spec: Any, activate: bool = False,
               max_attempts: int = 5) -> ProfileOperationResult:
        """Create a new profile under a freshly generated id

        Args:
            name: Display name (up to 20 characters)
            curve_spec: Setpoints, see build_curve
            activate: Also make the new profile active
            max_attempts: Ids to try before giving up on a collision

        Returns:
            Result carrying the new id
        """
        curve, error = build_curve(curve_spec)
        if error is not None:
            return ProfileOperationResult.fail(error)

        with self._lock:
            profile_id = self._free_id(max_attempts)
            if profile_id is None:
                return ProfileOperationResult.fail(ProfileError.STORAGE_WRITE_FAILED)
            return self._save(profile_id, self._clean_name(name), curve, activate)

    def _free_id(self, max_attempts: int = 5) -> Optional[str]:
        """Generate an id that is neither indexed nor holding data"""
        existing = set(self.profile_ids())
        for _ in range(max_attempts):
            profile_id = generate_id()
            if profile_id not in existing and not self.exists(profile_id):
                return profile_id
            logger.warning(f"Generated id {profile_id} already in use")
        logger.error("Could not generate a free profile id")
        return None

    def save_existing(self, profile_id: str, name: str, curve_spec: Any,
                      activate: bool = False) -> ProfileOperationResult:
        """Write a profile under a known id, replacing any stored curve

        Nothing is written if the id or curve is invalid. When the store
        refuses the write it is retried, then the oldest inactive profile
        is evicted and the write tried once more.
        """
        error = self._check_id(profile_id)
        if error is not None:
            return ProfileOperationResult.fail(error, profile_id or "")
        curve, error = build_curve(curve_spec)
        if error is not None:
            return ProfileOperationResult.fail(error, profile_id)

        with self._lock:
            return self._save(profile_id, self._clean_name(name), curve, activate)

    @staticmethod
    def _clean_name(name: Optional[str]) -> str:
        name = (name or "").strip()
        return (name or DEFAULT_NAME)[:MAX_NAME_LENGTH]

    # Reads

    def _read_blob(self, profile_id: str) -> Optional[bytes]:
        blob = self.store.get_bytes(data_key(profile_id))
        if not blob:
            return None
        return blob

    def load(self, profile_id: str) -> ProfileOperationResult:
        """Read a stored curve without touching the live profile

        A corrupt blob is not reported: the returned curve is then the
        empty (single dummy setpoint) curve.
        """
        error = self._check_id(profile_id)
        if error is not None:
            return ProfileOperationResult.fail(error, profile_id or "")
        blob = self._read_blob(profile_id)
        if blob is None:
            return ProfileOperationResult.fail(ProfileError.NOT_FOUND, profile_id)
        curve = ProfileCurve()
        curve.deserialize(blob)
        return ProfileOperationResult.ok(profile_id, curve)

    def get(self, profile_id: str) -> Optional[ProfileDetail]:
        """Stored profile with its name and setpoints, or None if missing"""
        result = self.load(profile_id)
        if not result:
            return None
        setpoints = [
            {"time": sp.time // 1000, "temp": sp.temperature, "fanSpeed": sp.fan_speed}
            for sp in result.curve.setpoints
            if (sp.time, sp.temperature, sp.fan_speed) != (0, 0, 0)
        ]
        return ProfileDetail(profile_id, self._load_name(profile_id),
                             profile_id == self.active_id, setpoints)

    def list(self) -> List[ProfileSummary]:
        """All indexed profiles in insertion order"""
        active = self.active_id
        return [ProfileSummary(i, self._load_name(i), i == active) for i in self.profile_ids()]

    # Mutations

    def activate(self, profile_id: str) -> ProfileOperationResult:
        """Load a stored profile into the live profile and mark it active"""
        logger.debug(f"activate called for {profile_id}")
        error = self._check_id(profile_id)
        if error is not None:
            return ProfileOperationResult.fail(error, profile_id or "")

        with self._lock:
            blob = self._read_blob(profile_id)
            if blob is None:
                logger.warning(f"Profile {profile_id} does not exist")
                return ProfileOperationResult.fail(ProfileError.NOT_FOUND, profile_id)
            self.live_profile.deserialize(blob)
            self._set_active_id(profile_id)

        logger.info(f"Profile {profile_id} activated")
        return ProfileOperationResult.ok(profile_id, self.live_profile)

    def delete(self, profile_id: str) -> ProfileOperationResult:
        """Delete a profile. The active profile cannot be deleted."""
        error = self._check_id(profile_id)
        if error is not None:
            return ProfileOperationResult.fail(error, profile_id or "")

        with self._lock:
            if profile_id == self.active_id:
                return ProfileOperationResult.fail(ProfileError.CANNOT_DELETE_ACTIVE, profile_id)
            ids = self.profile_ids()
            if profile_id not in ids and not self.exists(profile_id):
                return ProfileOperationResult.fail(ProfileError.NOT_FOUND, profile_id)

            self._remove(data_key(profile_id))
            self._remove(meta_key(profile_id))
            self._set_profile_ids([i for i in ids if i != profile_id])

        logger.info(f"Deleted profile {profile_id}")
        return ProfileOperationResult.ok(profile_id)

    def rename(self, profile_id: str, name: str) -> ProfileOperationResult:
        """Change a profile's display name. Only the metadata is rewritten."""
        error = self._check_id(profile_id)
        if error is not None:
            return ProfileOperationResult.fail(error, profile_id or "")

        with self._lock:
            if not self.exists(profile_id):
                # Metadata is still written, matching what the API has always done
                logger.warning(f"Renaming {profile_id} which has no stored curve")
            if not self._save_meta(profile_id, self._clean_name(name)):
                return ProfileOperationResult.fail(ProfileError.STORAGE_WRITE_FAILED, profile_id)
        return ProfileOperationResult.ok(profile_id)

    def delete_all(self) -> None:
        """Remove every profile, the index and the active selection"""
        with self._lock:
            for profile_id in self.profile_ids():
                self._remove(data_key(profile_id))
                self._remove(meta_key(profile_id))
            self._remove(IDS_KEY)
            self._remove(ACTIVE_KEY)
            self.live_profile.clear()
        logger.info("Deleted all profiles")

    def ensure_default(self) -> ProfileOperationResult:
        """Reconcile the index with stored data and make sure a profile is active

        Ids whose curve is missing are dropped. If nothing is active the
        first remaining profile becomes active; if nothing remains the
        default profile is created and activated. The active profile is
        loaded into the live profile.

        Returns:
            Result carrying the active id
        """
        with self._lock:
            ids = self.profile_ids()
            surviving = [i for i in ids if self.exists(i)]
            if len(surviving) != len(ids):
                for orphan in set(ids) - set(surviving):
                    logger.warning(f"Dropping orphan id {orphan}")
                self._set_profile_ids(surviving)

            if not surviving:
                logger.info("Creating default profile...")
                profile = self.default_profile
                curve, error = build_curve(profile.get("setpoints"))
                if error is not None:
                    logger.error(f"Default profile is invalid: {error.value}")
                    return ProfileOperationResult.fail(error)
                profile_id = self._free_id()
                if profile_id is None:
                    return ProfileOperationResult.fail(ProfileError.STORAGE_WRITE_FAILED)
                return self._save(profile_id, self._clean_name(profile.get("name")),
                                  curve, activate=True)

            active = self.active_id
            if active not in surviving:
                if active:
                    logger.warning(f"Active id {active} has no stored profile")
                active = surviving[0]
                self._set_active_id(active)
                logger.info(f"Defaulting active profile to {active}")

            return self.activate(active)
