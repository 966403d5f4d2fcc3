from dataclasses import dataclass, asdict
from typing import Optional


@dataclass(frozen=True)
class Camera:
    """A traffic camera the live view can switch to."""
    id: str
    location: str
    city: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    area: Optional[str] = None
    image_url: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data['imageUrl'] = data.pop('image_url')
        return data
