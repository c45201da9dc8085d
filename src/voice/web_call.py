"""
Client for the web-call API that connects a synthetic caller to a voice agent.

A web call returns a LiveKit access token for the room the agent joins.
"""

from typing import Dict, Optional

import httpx
from pydantic import BaseModel, Field

from ..evolver import config
from ..evolver.errors import ProviderError

import logging
logger = logging.getLogger(__name__)


class WebCall(BaseModel):
    call_id: str
    access_token: str
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    call_status: Optional[str] = None
    dynamic_variables: Dict[str, str] = Field(default_factory=dict, alias="retell_llm_dynamic_variables")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class WebCallClient:
    def __init__(self, api_url: Optional[str] = None, referer: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_url = api_url or config.WEB_CALL_API_URL
        self.referer = referer or config.WEB_CALL_REFERER
        self.timeout = timeout or config.WEB_CALL_TIMEOUT_SECONDS
        self.transport = transport

    async def create_web_call(self, agent_id: str, contact_name: str) -> WebCall:
        payload = {
            "agent_id": agent_id,
            "dynamic_variables": {"contact_name": contact_name},
            "page_url": self.referer,
        }
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Referer": self.referer,
        }
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0), transport=self.transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderError("web_call", f"timeout after {self.timeout:.0f}s creating web call", cause=e) from e
        except httpx.HTTPError as e:
            raise ProviderError("web_call", f"could not reach {self.api_url}: {e}", cause=e) from e

        if response.status_code >= 400:
            detail = response.text[:500] if response.text else "No response body"
            logger.error(f"Web call creation failed for agent {agent_id}: POST {self.api_url} -> {response.status_code}")
            raise ProviderError("web_call", f"HTTP {response.status_code} from {self.api_url}: {detail}")

        try:
            call = WebCall.model_validate(response.json())
        except ValueError as e:
            raise ProviderError("web_call", f"unexpected response body: {e}", cause=e) from e
        logger.info(f"Created web call {call.call_id} for agent {agent_id}")
        return call
