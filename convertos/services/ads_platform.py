"""
Meta Marketing API client for the ads agent.

Every call returns a PlatformResponse instead of raising: the execution
orchestrator records unsuccessful responses per recommendation and moves
on to the next one.

Typical usage:
    client = MetaAdsClient(access_token=settings.meta_access_token)
    state = await client.get_ad_state("120200000000001")
    await client.pause_ad("120200000000001")
    await client.aclose()
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

AD_STATE_FIELDS = "id,name,status,effective_status,creative{id,name},configured_status"

# Creation needs assets (page, media, pixel, targeting) this integration does not hold.
UNSUPPORTED_CREATION = {
    "ad": "Ad creation requires additional setup (page_id, creative assets). Use Meta Ads Manager for now.",
    "adset": "Ad set creation requires full targeting spec. Use Meta Ads Manager for now.",
    "campaign": "Campaign creation requires account context. Use Meta Ads Manager for now.",
    "audience": "Audience creation requires pixel/event data. Use Meta Ads Manager for now.",
    "form": "Form creation requires page context. Use Meta Ads Manager for now.",
}


@dataclass
class PlatformResponse:
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "PlatformResponse":
        return cls(success=False, error=error)


class MetaAdsClient:
    """Thin async wrapper over the Graph API endpoints the agent uses."""

    def __init__(
        self,
        access_token: Optional[str],
        api_version: str = "v24.0",
        base_url: str = "https://graph.facebook.com",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_ad_state(self, ad_id: str) -> PlatformResponse:
        return await self._request("GET", ad_id, params={"fields": AD_STATE_FIELDS})

    async def pause_ad(self, ad_id: str) -> PlatformResponse:
        return await self._request("POST", ad_id, json={"status": "PAUSED"})

    async def activate_ad(self, ad_id: str) -> PlatformResponse:
        return await self._request("POST", ad_id, json={"status": "ACTIVE"})

    async def update_ad_copy(self, ad_id: str, fields: Dict[str, Any]) -> PlatformResponse:
        """
        Compose the creative that would carry the new copy.

        Meta creatives are immutable, so nothing is mutated here: the
        response holds the proposed `object_story_spec` for a new ad.
        """
        ad = await self._request("GET", ad_id, params={"fields": "creative{id}"})
        if not ad.success:
            return ad

        creative_id = ((ad.data or {}).get("creative") or {}).get("id")
        if not creative_id:
            return PlatformResponse.failure("No creative found for ad")

        creative = await self._request("GET", creative_id, params={"fields": "object_story_spec"})
        if not creative.success:
            return creative

        story = (creative.data or {}).get("object_story_spec") or {}
        link_data = story.get("link_data") or {}
        proposed = {
            **story,
            "link_data": {
                **link_data,
                "message": fields.get("primary_text") or link_data.get("message"),
                "name": fields.get("headline") or link_data.get("name"),
                "description": fields.get("description") or link_data.get("description"),
                "call_to_action": (
                    {"type": fields["call_to_action"]} if fields.get("call_to_action")
                    else link_data.get("call_to_action")
                ),
            },
        }
        return PlatformResponse(success=True, data={
            "note": "Copy update requires creating new ad with new creative. Consider using create_ad instead.",
            "creative_id": creative_id,
            "proposed_creative": proposed,
        })

    async def create_entity(
        self,
        kind: str,
        parent_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> PlatformResponse:
        message = UNSUPPORTED_CREATION.get(kind, f"Unsupported entity kind: {kind}")
        logger.info(f"[META] create_{kind} not supported (parent={parent_id})")
        return PlatformResponse.failure(message)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        node_id: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> PlatformResponse:
        if not self.access_token:
            return PlatformResponse.failure("META_ACCESS_TOKEN not configured")

        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

        url = f"{self.base_url}/{self.api_version}/{node_id}"
        query = {**(params or {}), "access_token": self.access_token}

        try:
            resp = await self._http.request(method, url, params=query, json=json)
        except httpx.TimeoutException:
            logger.warning(f"[META] {method} {node_id} timed out")
            return PlatformResponse.failure(f"Meta API timed out after {self.timeout.read}s")
        except httpx.HTTPError as exc:
            logger.warning(f"[META] {method} {node_id} failed: {exc}")
            return PlatformResponse.failure(str(exc) or exc.__class__.__name__)

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if not isinstance(data, dict):
            data = {"data": data}

        if resp.is_error or data.get("error"):
            error = data.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            return PlatformResponse(success=False, data=data, error=message or resp.reason_phrase)

        return PlatformResponse(success=True, data=data)
