"""AWS Bedrock embedding provider (Cohere Embed or Amazon Titan).

Calls ``bedrock-runtime:invoke_model``.  boto3 is synchronous, so every call
runs in the default executor and is bounded by botocore connect/read
timeouts.

Cohere request body
-------------------
::

    {"texts": ["text"], "input_type": "search_document", "truncate": "END"}

Cohere response body (both flat and nested float formats are handled)
---------------------------------------------------------------------
::

    { "embeddings": [[...]] }                 # Embed v3
    { "embeddings": { "float": [[...]] } }    # Embed v4

Titan request / response
------------------------
::

    {"inputText": "text"}   →   {"embedding": [...]}
"""
import asyncio
import json
import logging
from functools import partial
from typing import Optional

from threatrag.errors import ConfigurationError

from .provider import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "cohere.embed-multilingual-v3"
DEFAULT_REGION   = "us-east-1"

# Bedrock's input validation rejects Cohere texts that exceed this limit
# *before* the model processes them, so the Cohere-level ``"truncate": "END"``
# parameter never gets a chance to work.  We must pre-truncate client-side.
_COHERE_BEDROCK_MAX_CHARS = 2048


class BedrockEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by AWS Bedrock.

    Args:
        aws_access_key_id:     AWS access key.
        aws_secret_access_key: AWS secret access key.
        model_id:              Bedrock model ID for the embedding model.
        aws_session_token:     Optional temporary-credential session token.
        region_name:           AWS region.  Defaults to ``us-east-1``.
        timeout:               botocore connect/read timeout in seconds.
    """

    def __init__(
        self,
        aws_access_key_id: Optional[str],
        aws_secret_access_key: Optional[str],
        model_id: str = DEFAULT_MODEL_ID,
        aws_session_token: Optional[str] = None,
        region_name: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        if not (aws_access_key_id and aws_secret_access_key):
            raise ConfigurationError(
                "Bedrock requires aws access_key_id and secret_access_key"
            )
        self._model_id  = model_id
        self._access_key = aws_access_key_id
        self._secret_key = aws_secret_access_key
        self._session_token = aws_session_token
        self._region    = region_name or DEFAULT_REGION
        self._timeout   = timeout
        self._client: Optional[object] = None

    # -----------------------------------------------------------------------
    # EmbeddingProvider properties
    # -----------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "bedrock"

    @property
    def model_id(self) -> str:
        return self._model_id

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _session_kwargs(self) -> dict:
        kwargs: dict = {
            "region_name":           self._region,
            "aws_access_key_id":     self._access_key,
            "aws_secret_access_key": self._secret_key,
        }
        if self._session_token:
            kwargs["aws_session_token"] = self._session_token
        return kwargs

    def _get_client(self) -> object:
        """Return a cached boto3 bedrock-runtime client."""
        if self._client is None:
            import boto3
            from botocore.config import Config

            config = Config(
                connect_timeout=self._timeout,
                read_timeout=self._timeout,
                retries={"max_attempts": 1},
            )
            self._client = boto3.client("bedrock-runtime", config=config, **self._session_kwargs())
        return self._client

    @property
    def _is_titan(self) -> bool:
        return self._model_id.startswith("amazon.titan")

    def _request_body(self, text: str) -> str:
        if self._is_titan:
            return json.dumps({"inputText": text})

        if len(text) > _COHERE_BEDROCK_MAX_CHARS:
            logger.warning(
                "[embeddings/bedrock] Truncating text from %d to %d chars",
                len(text), _COHERE_BEDROCK_MAX_CHARS,
            )
            text = text[:_COHERE_BEDROCK_MAX_CHARS]
        return json.dumps(
            {
                "texts":      [text],
                "input_type": "search_document",
                "truncate":   "END",
            }
        )

    def _parse_response(self, data: dict) -> list[float]:
        if self._is_titan:
            vector = data.get("embedding")
            if not vector:
                raise ValueError(
                    f"Unexpected Bedrock response — 'embedding' key missing: {list(data.keys())}"
                )
            return vector

        raw = data.get("embeddings")
        if raw is None:
            raise ValueError(
                f"Unexpected Bedrock response — 'embeddings' key missing: {list(data.keys())}"
            )
        if isinstance(raw, dict):
            # Cohere Embed v4 nested format: {"float": [[...], ...]}
            if "float" not in raw:
                raise ValueError(
                    f"Unexpected nested embeddings format, keys: {list(raw.keys())}"
                )
            raw = raw["float"]
        if len(raw) != 1:
            raise ValueError(f"Provider returned {len(raw)} vectors for 1 text")
        return raw[0]

    def _invoke(self, text: str) -> list[float]:
        client = self._get_client()
        logger.debug("[embeddings/bedrock] invoking model=%s", self._model_id)
        response = client.invoke_model(
            modelId=self._model_id,
            body=self._request_body(text),
            contentType="application/json",
            accept="application/json",
        )
        data = json.loads(response["body"].read())
        return [float(v) for v in self._parse_response(data)]

    def _has_credentials(self) -> bool:
        import boto3

        return boto3.Session(**self._session_kwargs()).get_credentials() is not None

    # -----------------------------------------------------------------------
    # EmbeddingProvider implementation
    # -----------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, partial(self._invoke, text))

    async def is_available(self, timeout: float) -> bool:
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._has_credentials), timeout
            )
        except Exception as exc:
            logger.warning("[embeddings/bedrock] probe failed: %s", exc)
            return False
