"""HTTP client for the remote model "generate" endpoint."""
from typing import Any, Dict, Optional

import aiohttp

from threatstudio.config import Settings, get_settings
from threatstudio.models import ModelInvocationError
from threatstudio.node_api import logger


def _is_ollama(model_id: str) -> bool:
    return model_id.startswith("ollama:")


def _is_azure(model_id: str) -> bool:
    return model_id.startswith("gpt-") or model_id.startswith("o1-")


class ModelClient:
    """POSTs prompts to the inference endpoint and returns the completion text.

    The endpoint routes to the right provider itself; this client only adds
    the provider credentials the model id calls for. No timeout is applied:
    a hung endpoint keeps the awaiting node running until the peer gives up.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def build_request(
        self,
        model_id: str,
        prompt: str,
        system_prompt: str,
        image_base64: Optional[str] = None,
        provider_config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model_id": model_id,
            "prompt": prompt,
            "images": [image_base64] if image_base64 else [],
            "system_instructions": system_prompt,
        }
        if _is_ollama(model_id):
            config = provider_config or self.settings.ollama_config
            if config:
                body["ollama_config"] = config
        elif _is_azure(model_id):
            config = provider_config or self.settings.azure_config
            if config:
                body["azure_config"] = config
        return body

    async def invoke(
        self,
        model_id: str,
        prompt: str,
        system_prompt: str,
        image_base64: Optional[str] = None,
        provider_config: Optional[Dict[str, Any]] = None,
    ) -> str:
        body = self.build_request(model_id, prompt, system_prompt, image_base64, provider_config)
        logger.info(
            f"Calling {model_id} (prompt {len(prompt)} chars, "
            f"{len(body['images'])} image(s))"
        )

        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None)
            ) as session:
                async with session.post(self.settings.inference_url, json=body) as resp:
                    if not resp.ok:
                        error_body = await resp.text()
                        raise ModelInvocationError(
                            f"Model API call failed: {resp.status} {resp.reason} - {error_body}"
                        )
                    payload = await resp.json()
        except aiohttp.ClientError as e:
            raise ModelInvocationError(f"Model API unreachable: {e}") from e

        if isinstance(payload, dict) and payload.get("response"):
            return payload["response"]
        return "No response from model."
