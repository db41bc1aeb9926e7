"""
OpenAI video generation backend.

Implements the GenerationBackend protocol over the OpenAI videos API:
``submit`` starts a render and returns the video id as the operation handle,
``poll`` maps the video status onto a PollResult.
"""

from typing import Any, Dict, Optional

from openai import OpenAI

from ..core.lifecycle import PollResult

DEFAULT_VIDEO_MODEL = "sora-2"

_IN_FLIGHT = ("queued", "in_progress")


class OpenAIVideoBackend:
    """Long-running video generation through OpenAI.

    ``input_spec`` keys: ``prompt`` (required), ``model``,
    ``duration_seconds`` and ``size``.
    """

    def __init__(self, client: Optional[OpenAI] = None, default_model: str = DEFAULT_VIDEO_MODEL):
        self.client = client or OpenAI()
        self.default_model = default_model

    def submit(self, input_spec: Dict[str, Any], timeout: float) -> str:
        """Start a render. Raises ValueError without a prompt; API errors propagate."""
        prompt = input_spec.get("prompt")
        if not prompt:
            raise ValueError("input_spec.prompt is required")

        params: Dict[str, Any] = {
            "model": input_spec.get("model") or self.default_model,
            "prompt": prompt,
        }
        if input_spec.get("duration_seconds"):
            params["seconds"] = str(int(input_spec["duration_seconds"]))
        if input_spec.get("size"):
            params["size"] = input_spec["size"]

        video = self.client.videos.create(timeout=timeout, **params)
        return video.id

    def poll(self, operation_handle: str) -> PollResult:
        video = self.client.videos.retrieve(operation_handle)

        if video.status in _IN_FLIGHT:
            return PollResult(done=False)
        if video.status == "completed":
            return PollResult(
                done=True,
                output_metadata={
                    "video_id": video.id,
                    "model": video.model,
                    "seconds": video.seconds,
                    "size": video.size,
                },
            )

        error = getattr(video, "error", None)
        message = getattr(error, "message", None) if error is not None else None
        return PollResult(done=True, error=message or f"Video generation {video.status}")
