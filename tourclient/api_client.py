"""
Tour API client for the TensorTours backend.

This module exposes the typed backend operations (places near a location,
tours by place id, on-demand tour generation and guest previews) on top of the
request dispatcher.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, Iterable
from urllib.parse import quote

from tourclient.dispatcher import RequestDispatcher
from tourclient.response_cache import category_kind
from tourclient.tour_cache import TourPrefetchCache
from tourshared.exceptions import TourClientError, RequestFailedError
from tourshared.models import (
    ApiRequest, OperationKind, TourType, PlacesResponse, TourResponse, CityPreview
)

logger = logging.getLogger(__name__)


def _tour_type_value(tour_type) -> str:
    return tour_type.value if isinstance(tour_type, TourType) else TourType(tour_type).value


class TourApiClient:
    """
    Typed TensorTours backend operations.

    Authenticated operations go through the dispatcher with the session's ID
    token; preview operations are unauthenticated and degrade gracefully.
    """

    def __init__(self, dispatcher: RequestDispatcher, tour_cache: Optional[TourPrefetchCache] = None):
        self.dispatcher = dispatcher
        self.tour_cache = tour_cache or TourPrefetchCache()

    async def get_places(
        self,
        latitude: float,
        longitude: float,
        radius: int = 500,
        tour_type: TourType = TourType.HISTORY,
        max_results: int = 5
    ) -> PlacesResponse:
        """
        Fetch points of interest near a location.

        Served from the response cache when the same tour type and radius were
        fetched within the TTL from less than the cache distance away.
        """
        tour_type = _tour_type_value(tour_type)
        signature = f"places:{latitude:.4f}:{longitude:.4f}:{radius}:{tour_type}:{max_results}"
        body = {
            'latitude': latitude,
            'longitude': longitude,
            'radius': radius,
            'tour_type': tour_type,
            'max_results': max_results,
        }

        payload = await self.dispatcher.dispatch(
            signature,
            OperationKind.PLACES,
            True,
            lambda token: ApiRequest('POST', '/getPlaces', json=body),
            cache_category=(category_kind(OperationKind.PLACES, tour_type), radius),
            origin=(latitude, longitude),
        )
        response = PlacesResponse.from_dict(payload)
        logger.debug(f"Fetched {len(response.places)} places near ({latitude:.4f}, {longitude:.4f})")
        return response

    async def get_tour(self, place_id: str, tour_type: TourType = TourType.HISTORY) -> TourResponse:
        """
        Fetch the pre-generated tour for a place.

        Raises:
            RequestFailedError: With a hint to generate the tour when none exists
        """
        tour_type = _tour_type_value(tour_type)

        cached = self.tour_cache.get(place_id, tour_type)
        if cached is not None:
            return TourResponse.from_dict(cached)

        try:
            payload = await self._fetch_tour_payload(place_id, tour_type)
        except RequestFailedError as e:
            if e.status == 404 or 'not found' in (e.server_message or '').lower():
                raise RequestFailedError(
                    f"Tour not found for {place_id}. You may need to generate this tour first.",
                    status=e.status, server_message=e.server_message, cause=e
                ) from e
            raise

        response = TourResponse.from_dict(payload)
        self.tour_cache.set(place_id, tour_type, payload)
        logger.debug(f"Fetched tour for {response.tour.place_name or place_id}")
        return response

    async def _fetch_tour_payload(self, place_id: str, tour_type: str) -> Dict[str, Any]:
        body = {'place_id': place_id, 'tour_type': tour_type}
        return await self.dispatcher.dispatch(
            f"tour:{place_id}:{tour_type}",
            OperationKind.TOUR,
            True,
            lambda token: ApiRequest('POST', '/getTour', json=body),
        )

    async def get_on_demand_tour(
        self,
        place_id: str,
        tour_type: TourType = TourType.HISTORY,
        language_code: str = 'en'
    ) -> TourResponse:
        """Generate a tour for a place. Every call is a separate request."""
        tour_type = _tour_type_value(tour_type)
        request_id = f"ondemand:{place_id}:{tour_type}:{language_code}:{uuid.uuid4()}"
        body = {
            'place_id': place_id,
            'tour_type': tour_type,
            'language_code': language_code,
            'request_id': request_id,
            'timestamp': datetime.now().isoformat(),
        }

        payload = await self.dispatcher.dispatch(
            None,
            OperationKind.ON_DEMAND_TOUR,
            True,
            lambda token: ApiRequest('POST', '/getOnDemandTour', json=body),
        )
        response = TourResponse.from_dict(payload)
        self.tour_cache.set(place_id, tour_type, payload)
        return response

    async def get_preview_tour(self, place_id: str, tour_type: TourType = TourType.HISTORY) -> TourResponse:
        """Fetch the guest preview audio tour for a place (no authentication)."""
        tour_type = _tour_type_value(tour_type)
        payload = await self.dispatcher.dispatch(
            f"preview-audio:{place_id}:{tour_type}",
            OperationKind.PREVIEW_TOUR,
            False,
            lambda token: ApiRequest('GET', f"/preview/audio/{quote(place_id, safe='')}",
                                     params={'tour_type': tour_type}),
        )
        return TourResponse.from_dict(payload)

    async def fetch_city_preview(self, city: str, tour_type: TourType = TourType.HISTORY) -> CityPreview:
        """
        Fetch the guest preview of a city.

        Never raises for backend problems; returns an empty preview carrying
        the error message instead.
        """
        tour_type = _tour_type_value(tour_type)
        try:
            payload = await self.dispatcher.dispatch(
                f"city-preview:{city}:{tour_type}",
                OperationKind.CITY_PREVIEW,
                False,
                lambda token: ApiRequest('GET', f"/preview/{quote(city, safe='')}",
                                         params={'tour_type': tour_type}),
            )
            preview = CityPreview.from_dict(city, payload)
        except TourClientError as e:
            logger.warning(f"City preview for {city} unavailable: {e.message}")
            return CityPreview.empty(city, error=e.message)

        logger.debug(f"City preview for {city} ({tour_type}): {len(preview.places)} places")
        return preview

    def prefetch_tours(self, place_ids: Iterable[str], tour_type: TourType = TourType.HISTORY) -> int:
        """
        Prefill the tour cache in the background.

        Returns:
            Number of fetches started
        """
        return self.tour_cache.prefill(place_ids, _tour_type_value(tour_type), self._fetch_tour_payload)
