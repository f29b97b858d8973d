"""HTTP client for the remote dialogue service."""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, Optional

import httpx

from voice_dialogue.core.types import Clip, InteractionResult, LearningProgress
from voice_dialogue.errors import ApiError

logger = logging.getLogger(__name__)

STREAM_PREFIX = "/api/conversational-learning/stream"


class DialogueClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise ApiError("Server URL missing")
        return f"{self.base_url}{STREAM_PREFIX}{path}"

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    async def start_session(self, persona: str) -> str:
        try:
            resp = await self._client.post(self._url("/start"), params={"persona": persona})
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ApiError(f"Failed to start session: {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ApiError(f"Failed to start session: {exc}") from exc
        session_id = data.get("sessionId") if isinstance(data, dict) else None
        if not session_id:
            raise ApiError("Failed to start session: no session id in response")
        return str(session_id)

    async def end_session(self, session_id: str) -> bool:
        """Best effort; returns False instead of raising."""
        return await self._notify("/complete", params={"sessionId": session_id})

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    async def submit_utterance(self, session_id: str, clip: Clip) -> InteractionResult:
        files = {"audioChunk": (clip.filename, clip.data, clip.mime_type)}
        try:
            resp = await self._client.post(
                self._url("/interact"),
                data={"sessionId": session_id},
                files=files,
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ApiError(f"Failed to process audio: {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ApiError(f"Failed to process audio: {exc}") from exc
        if not isinstance(payload, dict):
            raise ApiError("Failed to process audio: invalid response")
        try:
            return parse_interaction(payload)
        except (TypeError, ValueError) as exc:
            raise ApiError(f"Failed to process audio: invalid response ({exc})") from exc

    async def notify_playback_started(self, session_id: str, text: str, estimated_duration_ms: int) -> bool:
        return await self._notify(
            "/ai-speaking",
            data={
                "sessionId": session_id,
                "message": text,
                "estimatedDurationMs": str(estimated_duration_ms),
            },
        )

    async def notify_playback_finished(self, session_id: str) -> bool:
        return await self._notify("/ai-finished", data={"sessionId": session_id})

    # ------------------------------------------------------------------
    async def _notify(self, path: str, **kwargs: Any) -> bool:
        try:
            resp = await self._client.post(self._url(path), **kwargs)
            resp.raise_for_status()
        except (httpx.HTTPError, ApiError) as exc:
            logger.debug(f"[DialogueClient] {path} ignored failure: {exc}")
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()


def parse_interaction(payload: Dict[str, Any]) -> InteractionResult:
    audio: Optional[bytes] = None
    encoded = payload.get("audioResponse")
    if encoded:
        audio = base64.b64decode(encoded)

    progress: Optional[LearningProgress] = None
    raw = payload.get("learningProgress")
    if isinstance(raw, dict):
        progress = LearningProgress(
            goals_met=int(raw.get("goalsMet", 0)),
            total_goals=int(raw.get("totalGoals", 0)),
            current_goals=tuple(str(goal) for goal in raw.get("currentGoals") or ()),
        )

    return InteractionResult(
        success=bool(payload.get("success", False)),
        reply_text=str(payload.get("aiResponse") or ""),
        reply_audio=audio,
        progress=progress,
    )
