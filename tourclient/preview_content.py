"""
Static preview content for guest mode.

Pre-built preview JSON is published per city and category on a content host.
Fetches are unauthenticated and degrade to an empty preview.
"""

import logging
from urllib.parse import quote

from tourclient.dispatcher import RequestDispatcher
from tourshared.exceptions import TourClientError
from tourshared.models import ApiRequest, OperationKind, CityPreview

logger = logging.getLogger(__name__)


class PreviewContentClient:
    """Fetches ``<content_url>/<city>/<category>.json`` without credentials."""

    def __init__(self, dispatcher: RequestDispatcher, content_url: str):
        self.dispatcher = dispatcher
        self.content_url = content_url.rstrip('/')

    async def fetch(self, city: str, category: str = "history") -> CityPreview:
        path = f"/{quote(city, safe='')}/{quote(category, safe='')}.json"
        try:
            payload = await self.dispatcher.dispatch(
                f"preview-content:{city}:{category}",
                OperationKind.PREVIEW_CONTENT,
                False,
                lambda token: ApiRequest('GET', path, base_url=self.content_url),
            )
            return CityPreview.from_dict(city, payload)
        except TourClientError as e:
            logger.warning(f"Preview content for {city}/{category} unavailable: {e.message}")
            return CityPreview.empty(city, error=e.message)
