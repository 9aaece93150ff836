"""UmoIQ (NextBus) public XML feed client. Fetches vehicle locations and route titles."""

import time
import logging
import urllib.parse
import urllib.request
import xml.etree.ElementTree as ET

from config import FEED_URL, DEFAULT_AGENCY

logger = logging.getLogger(__name__)


def _parse_body(xml_text):
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ValueError(f'Malformed feed XML: {e}') from e
    if root.tag != 'body':
        raise ValueError(f'Unexpected feed root element <{root.tag}>')
    return root


def parse_vehicle_locations(xml_text):
    """Parse a vehicleLocations response.

    Returns list of dicts with keys: vid, route, speed (raw attribute values,
    None when absent).
    """
    root = _parse_body(xml_text)
    return [
        {
            'vid': v.get('id'),
            'route': v.get('routeTag'),
            'speed': v.get('speedKmHr'),
        }
        for v in root.iter('vehicle')
    ]


def parse_route_list(xml_text):
    """Parse a routeList response into {tag: title}, skipping incomplete entries."""
    root = _parse_body(xml_text)
    titles = {}
    for route in root.iter('route'):
        tag = route.get('tag')
        title = route.get('title')
        if not tag or not title:
            continue
        titles[tag] = title
    return titles


class TTCClient:
    def __init__(self, agency=DEFAULT_AGENCY):
        self.agency = agency

    def _get(self, command):
        """GET a feed command with retries. Returns the response text."""
        query = urllib.parse.urlencode({'command': command, 'a': self.agency})
        url = f'{FEED_URL}?{query}'
        req = urllib.request.Request(url)

        for attempt in range(3):
            try:
                with urllib.request.urlopen(req, timeout=30) as resp:
                    return resp.read().decode('utf-8')
            except Exception as e:
                logger.warning(f'Feed attempt {attempt + 1} failed for {command}: {e}')
                if attempt < 2:
                    time.sleep(2 ** attempt)
                else:
                    raise

    def get_vehicle_locations(self):
        """Fetch current vehicle positions for the agency."""
        return parse_vehicle_locations(self._get('vehicleLocations'))

    def get_route_titles(self):
        """Fetch route tag -> display title."""
        return parse_route_list(self._get('routeList'))
