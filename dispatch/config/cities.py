"""
City Profiles - single source of truth for per-city static knowledge

Each profile carries what the extraction prompt, the transcriber and the
Detective Bureau need to know about one metro area: its regions, landmarks,
street topology, precinct -> region table and radio vocabulary.
Profiles and feeds are immutable at runtime.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dispatch.models.domain.feed import SourceFeed, FeedKind


@dataclass(frozen=True)
class CityProfile:
    id: str
    name: str
    short_name: str
    state: str
    regions: Tuple[str, ...]
    landmarks: Tuple[str, ...]
    street_knowledge: str
    precinct_summary: str
    precinct_to_region: Dict[str, str] = field(default_factory=dict)
    vocabulary_hint: str = ""
    parser_rules: str = ""
    openmhz_system: Optional[str] = None
    camera_api: Optional[str] = None

    def region_for_precinct(self, precinct) -> Optional[str]:
        """'the 75' / '75th' / 75 -> 'Brooklyn'"""
        if precinct is None:
            return None
        digits = re.sub(r'\D', '', str(precinct))
        if not digits:
            return None
        return self.precinct_to_region.get(str(int(digits)))


# =============================================================================
# NEW YORK CITY
# =============================================================================

def _precincts(region: str, numbers: List[int]) -> Dict[str, str]:
    return {str(n): region for n in numbers}


NYC_PRECINCT_TO_BOROUGH: Dict[str, str] = {
    **_precincts('Manhattan', [1, 5, 6, 7, 9, 10, 13, 14, 17, 18, 19, 20, 22, 23, 24,
                               25, 26, 28, 30, 32, 33, 34]),
    **_precincts('Bronx', [40, 41, 42, 43, 44, 45, 46, 47, 48, 49, 50, 52]),
    **_precincts('Brooklyn', [60, 61, 62, 63, 66, 67, 68, 69, 70, 71, 72, 73, 75, 76, 77,
                              78, 79, 81, 83, 84, 88, 90, 94]),
    **_precincts('Queens', list(range(100, 116))),
    **_precincts('Staten Island', [120, 121, 122, 123]),
}

NYC_LANDMARKS = (
    'Times Square', 'Penn Station', 'Grand Central', 'Port Authority', 'Lincoln Tunnel',
    'Holland Tunnel', 'Brooklyn Bridge', 'Manhattan Bridge', 'Williamsburg Bridge',
    'GW Bridge', 'George Washington Bridge', 'Yankee Stadium', 'Citi Field', 'JFK', 'LaGuardia',
    'Central Park', 'Prospect Park', 'Harlem', 'SoHo', 'Tribeca', 'Chinatown', 'Little Italy',
    'East Village', 'West Village', 'Midtown', 'FDR', 'West Side Highway',
    'BQE', 'LIE', 'Cross Bronx', 'Major Deegan', 'Bruckner', 'Flatbush', 'Atlantic Avenue',
    'Fulton Street', 'Broadway', '125th Street', '42nd Street', '34th Street', '14th Street',
    'Wall Street', 'Canal Street', 'Houston Street', 'Delancey', 'Bowery',
)

NYC_PARSER_RULES = """LOCATION EXTRACTION RULES:
1. Street addresses: "123 West 45th Street" -> location: "123 W 45th St"
2. Intersections: "42nd and Lexington", "at the corner of Broadway and 125th" -> "42nd St & Lexington Ave"
3. Landmarks: "Times Square", "Penn Station", "Grand Central", "Port Authority" -> landmark name
4. Precinct references: "the 7-5", "75 precinct", "seven-five" -> precinct: "75"
5. Sector/Adam/Boy/Charlie designations with location context
6. Highways: "FDR at 96th", "BQE", "Cross Bronx" -> highway location

PRECINCT TO BOROUGH MAPPING:
- 1-34: Manhattan
- 40-52: Bronx
- 60-94: Brooklyn
- 100-115: Queens
- 120-123: Staten Island"""

NYC = CityProfile(
    id='nyc',
    name='New York City',
    short_name='NYC',
    state='NY',
    regions=('Manhattan', 'Brooklyn', 'Bronx', 'Queens', 'Staten Island'),
    landmarks=NYC_LANDMARKS,
    street_knowledge='NYC street topology - one-ways, dead ends, bridge/tunnel access',
    precinct_summary='NYPD precincts 1-123',
    precinct_to_region=NYC_PRECINCT_TO_BOROUGH,
    vocabulary_hint=(
        "NYPD police radio dispatch with locations. 10-4, 10-13, 10-85, K, forthwith, "
        "precinct, sector, central, responding."
    ),
    parser_rules=NYC_PARSER_RULES,
    openmhz_system='nypd',
    camera_api='https://webcams.nyctmc.org/api/cameras',
)


# =============================================================================
# MINNEAPOLIS
# =============================================================================

MPLS_PRECINCT_TO_DISTRICT: Dict[str, str] = {
    '1': 'Downtown',
    '2': 'Northeast',
    '3': 'South',
    '4': 'North',
    '5': 'Southwest',
}

MPLS_PARSER_RULES = """MINNEAPOLIS LOCATION EXTRACTION RULES:
1. Street addresses: "123 Lake Street" -> "123 Lake St"
2. Intersections: "Hennepin and Lake", "Franklin and Lyndale" -> "Hennepin Ave & Lake St"
3. Landmarks: "Target Center", "US Bank Stadium", "Mall of America", "Nicollet Mall"
4. Highways: "I-35W", "I-94", "I-494", "Highway 55"
5. Neighborhoods: Uptown, Downtown, North Minneapolis, Northeast, Phillips, Powderhorn

MINNEAPOLIS PRECINCTS:
- 1st Precinct: Downtown, North Loop
- 2nd Precinct: Northeast Minneapolis
- 3rd Precinct: South Minneapolis (Lake St, Powderhorn, Longfellow)
- 4th Precinct: North Minneapolis
- 5th Precinct: Southwest Minneapolis (Uptown, Calhoun, Lyndale)"""

MPLS = CityProfile(
    id='mpls',
    name='Minneapolis',
    short_name='MPLS',
    state='MN',
    regions=('Downtown', 'North', 'Northeast', 'Southeast', 'South', 'Southwest',
             'Calhoun-Isles', 'Camden', 'Near North', 'Phillips', 'Powderhorn',
             'Nokomis', 'Longfellow'),
    landmarks=(
        'Target Center', 'US Bank Stadium', 'Mall of America', 'Minneapolis Convention Center',
        'Hennepin Avenue', 'Lake Street', 'Nicollet Mall', 'Stone Arch Bridge',
        'University of Minnesota', 'Minneapolis-Saint Paul Airport', 'Lake Calhoun', 'Lake Harriet',
    ),
    street_knowledge='Minneapolis street grid - Lake Street, Hennepin Ave, I-35W, I-94',
    precinct_summary='Minneapolis Police precincts 1-5, Hennepin County Sheriff',
    precinct_to_region=MPLS_PRECINCT_TO_DISTRICT,
    vocabulary_hint=(
        "Minneapolis and Hennepin County police, fire and EMS radio dispatch. "
        "Squad, medic, engine, precinct, code 3."
    ),
    parser_rules=MPLS_PARSER_RULES,
    openmhz_system='mnhennco',
)


CITIES: Dict[str, CityProfile] = {
    NYC.id: NYC,
    MPLS.id: MPLS,
}


# =============================================================================
# BROADCASTIFY FEEDS
# =============================================================================
# Greedy start order: the supervisor walks this list top to bottom.

NYPD_FEEDS = (
    SourceFeed('40184', 'NYPD Citywide 1', 'nyc'),
    SourceFeed('40185', 'NYPD Citywide 2', 'nyc'),
    SourceFeed('40186', 'NYPD Citywide 3', 'nyc'),
    SourceFeed('1189', 'NYPD SOD/ESU/Transit', 'nyc'),
    SourceFeed('36687', 'NYPD Manhattan 1/5/7', 'nyc'),
)

# Minneapolis police is encrypted on ARMER; these are Fire/EMS and Sheriff only
MPLS_FEEDS = (
    SourceFeed('26049', 'Hennepin County Sheriff', 'mpls'),
    SourceFeed('30435', 'Hennepin County Fire/EMS', 'mpls'),
    SourceFeed('741', 'Minneapolis Fire', 'mpls'),
)

ALL_FEEDS = NYPD_FEEDS + MPLS_FEEDS

# Call-log sources (polled, not streamed)
BCFY_CALLS_FEED = SourceFeed('bcfy-calls', 'Broadcastify Calls', 'nyc', FeedKind.POLL)


def get_city(city_id: str) -> CityProfile:
    if city_id not in CITIES:
        raise ValueError(f"Unknown city: {city_id}. Must be one of: {list(CITIES.keys())}")
    return CITIES[city_id]


def initial_stream_feeds(max_streams: int, cities: List[str]) -> List[SourceFeed]:
    """Start with three NYPD feeds and one Minneapolis feed, capped."""
    preferred = [f for f in NYPD_FEEDS[:3] + MPLS_FEEDS[:1] if f.city in cities]
    return preferred[:max_streams]


def feeds_for(cities: List[str]) -> List[SourceFeed]:
    return [f for f in ALL_FEEDS if f.city in cities]
