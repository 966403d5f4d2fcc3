"""
CityState - the live, bounded picture of one city

Holds the most recent transcripts and incidents (newest first), the
monotonic incident id counter, the camera directory and the camera the live
view is currently pointed at. Mutated only by the city's worker task.
"""
import asyncio
import logging
import random
import re
from collections import deque
from typing import Deque, List, Optional

import aiohttp

from dispatch.models.domain import Camera, Incident, Transcript, UNKNOWN

logger = logging.getLogger(__name__)

NYC_CAMERA_API = "https://webcams.nyctmc.org/api/cameras"

MPLS_FALLBACK_CAMERAS = (
    Camera('C856', 'I-394 at Penn Ave', 'mpls', 44.9697, -93.3100, 'Downtown',
           'https://video.dot.state.mn.us/video/image/metro/C856'),
    Camera('C852', 'I-394 at Dunwoody', 'mpls', 44.9680, -93.2898, 'Downtown',
           'https://video.dot.state.mn.us/video/image/metro/C852'),
    Camera('C107', 'I-94 at Hennepin Ave', 'mpls', 44.9738, -93.2780, 'Downtown',
           'https://video.dot.state.mn.us/video/image/metro/C107'),
    Camera('C620', 'I-35W at Washington Ave', 'mpls', 44.9738, -93.2590, 'Downtown',
           'https://video.dot.state.mn.us/video/image/metro/C620'),
    Camera('C633', 'I-35W at Lake St', 'mpls', 44.9486, -93.2505, 'South',
           'https://video.dot.state.mn.us/video/image/metro/C633'),
)

_LOCATION_SPLIT = re.compile(r'[\s&@]+')


class CityState:
    """Bounded rings plus id counter for one city"""

    def __init__(
        self,
        city: str,
        max_incidents: int = 50,
        max_transcripts: int = 20,
        rng: Optional[random.Random] = None,
    ):
        self.city = city
        self.incidents: Deque[Incident] = deque(maxlen=max_incidents)
        self.transcripts: Deque[Transcript] = deque(maxlen=max_transcripts)
        self.cameras: List[Camera] = []
        self.current_camera: Optional[Camera] = None
        self._last_incident_id = 0
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Ids and rings
    # ------------------------------------------------------------------

    def next_incident_id(self) -> int:
        """Strictly increasing within this city, never reused."""
        self._last_incident_id += 1
        return self._last_incident_id

    @property
    def last_incident_id(self) -> int:
        return self._last_incident_id

    def append_incident(self, incident: Incident) -> None:
        if incident.city != self.city:
            raise ValueError(f"Incident {incident.id} belongs to {incident.city}, not {self.city}")
        self.incidents.appendleft(incident)

    def append_transcript(self, transcript: Transcript) -> None:
        self.transcripts.appendleft(transcript)

    def recent_incidents(self, n: Optional[int] = None) -> List[Incident]:
        """Newest first"""
        items = list(self.incidents)
        return items if n is None else items[:n]

    def recent_transcripts(self, n: Optional[int] = None) -> List[Transcript]:
        items = list(self.transcripts)
        return items if n is None else items[:n]

    # ------------------------------------------------------------------
    # Cameras
    # ------------------------------------------------------------------

    def set_cameras(self, cameras: List[Camera]) -> None:
        self.cameras = list(cameras)
        if self.current_camera is None and self.cameras:
            self.current_camera = self.cameras[0]

    def find_nearest_camera(self, location: Optional[str], region: Optional[str]) -> Optional[Camera]:
        """
        Pick a camera for an incident.

        Narrow to cameras whose area mentions the region (if any match), then
        to cameras whose name shares a word longer than 2 characters with the
        location. Falls back to a random camera from the narrowed set.
        """
        if not self.cameras:
            return None

        candidates = self.cameras
        if region and region != UNKNOWN:
            region_lower = region.lower()
            in_region = [c for c in candidates if c.area and region_lower in c.area.lower()]
            if in_region:
                candidates = in_region

        if location and location != UNKNOWN:
            words = [w for w in _LOCATION_SPLIT.split(location.lower()) if len(w) > 2]
            matching = [
                c for c in candidates
                if any(w in (c.location or '').lower() for w in words)
            ]
            if matching:
                return self._rng.choice(matching)

        return self._rng.choice(candidates)

    def switch_camera(self, camera: Optional[Camera]) -> bool:
        """Returns True if the live view changed."""
        if camera is None or camera == self.current_camera:
            return False
        self.current_camera = camera
        return True

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        """Read-only view for the gateway init message and the state cache."""
        return {
            'city': self.city,
            'incidents': [i.to_dict() for i in self.incidents],
            'transcripts': [t.to_dict() for t in self.transcripts],
            'cameras': [c.to_dict() for c in self.cameras],
            'currentCamera': self.current_camera.to_dict() if self.current_camera else None,
            'lastIncidentId': self._last_incident_id,
        }


class CameraDirectory:
    """Loads traffic cameras per city"""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout: float = 15.0):
        self.session = session
        self.timeout = timeout

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

    async def load(self, city: str) -> List[Camera]:
        if city == 'nyc':
            return await self._load_nyc()
        if city == 'mpls':
            logger.info(f"[MPLS] Loaded {len(MPLS_FALLBACK_CAMERAS)} fallback cameras")
            return list(MPLS_FALLBACK_CAMERAS)
        return []

    async def _load_nyc(self) -> List[Camera]:
        await self._ensure_session()
        try:
            async with self.session.get(NYC_CAMERA_API, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    logger.warning(f"[NYC] Camera API returned {resp.status}")
                    return []
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            logger.warning("[NYC] Camera API timeout")
            return []
        except aiohttp.ClientError as e:
            logger.warning(f"[NYC] Camera fetch error: {e}")
            return []

        cameras = parse_nyc_cameras(data)
        logger.info(f"[NYC] Loaded {len(cameras)} traffic cameras")
        return cameras


def parse_nyc_cameras(data) -> List[Camera]:
    """Online cameras only; image served by the city camera API."""
    cameras = []
    for cam in data or []:
        if cam.get('isOnline') not in (True, 'true'):
            continue
        cameras.append(Camera(
            id=str(cam.get('id')),
            location=cam.get('name') or '',
            city='nyc',
            lat=cam.get('latitude'),
            lng=cam.get('longitude'),
            area=cam.get('area') or 'NYC',
            image_url=f"{NYC_CAMERA_API}/{cam.get('id')}/image",
        ))
    return cameras
