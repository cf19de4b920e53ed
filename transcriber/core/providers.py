"""
Speech-to-text provider clients.

OpenAI Whisper for plain segment transcription, Deepgram Nova-3 for
segments and for the whole-file speaker-diarized path. Both are thin
synchronous `requests` clients; the pipeline runs them in worker threads.
HTTP failures are mapped onto ProviderError / ProviderRateLimited so the
chunk processor can decide between retrying, splitting and failing.
"""

import asyncio
import inspect
import json
import logging
import os
from typing import Optional, Protocol, runtime_checkable

import requests

from transcriber.core.config import AppConfig
from transcriber.core.constants import (
    ErrorCode, ProviderName,
    OPENAI_API_BASE, OPENAI_MODEL, OPENAI_API_KEY_ENV,
    DEEPGRAM_API_BASE, DEEPGRAM_MODEL, DEEPGRAM_API_KEY_ENV,
    PROVIDER_MIN_TIMEOUT_SEC,
)
from transcriber.core.error_codes import InvalidInput, ProviderError, ProviderRateLimited
from transcriber.core.models import JobConfig, SpeakerTranscript, TranscriptionHints, Utterance

logger = logging.getLogger(__name__)


@runtime_checkable
class TranscriptionProvider(Protocol):
    name: str
    supports_speakers: bool

    def transcribe_segment(self, audio_bytes: bytes, hints: TranscriptionHints) -> str:
        ...

    def transcribe_with_speakers(self, audio_bytes: bytes,
                                 hints: TranscriptionHints) -> SpeakerTranscript:
        ...


async def invoke(fn, *args):
    """Await coroutine functions directly; run blocking clients in a thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    return await asyncio.to_thread(fn, *args)


# ── HTTP helpers ──────────────────────────────────────────────────────

def _timeout_for(size_bytes: int) -> int:
    # ~1 min per 10MB, minimum 120s
    return max(PROVIDER_MIN_TIMEOUT_SEC, int(size_bytes / (10 * 1024 * 1024) * 60) + 60)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not worth honouring here
        return None


def _post(provider: str, url: str, **kwargs) -> requests.Response:
    try:
        return requests.post(url, **kwargs)
    except requests.exceptions.Timeout:
        raise ProviderError(f"{provider} request timed out",
                            code=ErrorCode.PROVIDER_TIMEOUT, retryable=True)
    except requests.exceptions.ConnectionError:
        raise ProviderError(f"Network error connecting to {provider}",
                            code=ErrorCode.NETWORK_TRANSIENT, retryable=True)
    except requests.exceptions.RequestException as e:
        raise ProviderError(f"{provider} request failed: {e}", retryable=True)


def _check_response(provider: str, resp: requests.Response) -> dict:
    """Map HTTP status to the error taxonomy; return the parsed JSON body."""
    status = resp.status_code
    if status == 429:
        retry_after = _parse_retry_after(resp.headers.get('Retry-After'))
        raise ProviderRateLimited(f"{provider} rate limited (429)", retry_after=retry_after)
    if status in (408, 504):
        raise ProviderError(f"{provider} returned {status} (timeout)",
                            code=ErrorCode.PROVIDER_TIMEOUT, retryable=True, status_code=status)
    if status >= 500:
        raise ProviderError(f"{provider} returned {status}",
                            code=ErrorCode.PROVIDER_FAILED, retryable=True, status_code=status)
    if status != 200:
        # Never include request headers here: they carry the API key
        body = resp.text[:300] if resp.text else "No response body"
        raise ProviderError(f"{provider} returned {status}: {body}",
                            code=ErrorCode.PROVIDER_REJECTED, retryable=False, status_code=status)
    try:
        return resp.json()
    except (json.JSONDecodeError, ValueError):
        raise ProviderError(f"Failed to parse {provider} response JSON", retryable=True)


# ── OpenAI Whisper ────────────────────────────────────────────────────

class OpenAIWhisperProvider:
    """Whisper via the audio transcriptions endpoint. No speaker labels."""

    name = ProviderName.OPENAI
    supports_speakers = False

    def __init__(self, api_key: str, api_base: str = OPENAI_API_BASE):
        if not api_key:
            raise InvalidInput("OpenAI API key is required")
        self._api_key = api_key
        self.url = f"{api_base}/audio/transcriptions"

    def transcribe_segment(self, audio_bytes: bytes, hints: TranscriptionHints) -> str:
        data = {
            'model': hints.model or OPENAI_MODEL,
            'response_format': 'json',
        }
        if hints.language:
            data['language'] = hints.language
        if hints.prompt:
            data['prompt'] = hints.prompt
        if hints.temperature is not None:
            data['temperature'] = str(hints.temperature)

        resp = _post(
            "OpenAI", self.url,
            headers={"Authorization": f"Bearer {self._api_key}"},
            files={'file': ('chunk.mp3', audio_bytes, 'audio/mpeg')},
            data=data,
            timeout=_timeout_for(len(audio_bytes)),
        )
        result = _check_response("OpenAI", resp)
        return (result.get('text') or '').strip()

    def transcribe_with_speakers(self, audio_bytes: bytes,
                                 hints: TranscriptionHints) -> SpeakerTranscript:
        raise ProviderError("OpenAI Whisper does not support speaker diarization",
                            code=ErrorCode.PROVIDER_REJECTED, retryable=False)


# ── Deepgram ──────────────────────────────────────────────────────────

class DeepgramProvider:
    """Deepgram pre-recorded API (Nova-3), with optional diarization."""

    name = ProviderName.DEEPGRAM
    supports_speakers = True

    def __init__(self, api_key: str, api_base: str = DEEPGRAM_API_BASE):
        if not api_key:
            raise InvalidInput("Deepgram API key is required")
        self._api_key = api_key
        self.url = f"{api_base}/listen"

    def _params(self, hints: TranscriptionHints, speakers: bool) -> dict:
        params = {
            "model": hints.model or DEEPGRAM_MODEL,
            "smart_format": "true",
            "punctuate": "true",
            "paragraphs": "true",
        }
        if hints.language:
            params["language"] = hints.language
        else:
            params["detect_language"] = "true"
        if speakers:
            params["diarize"] = "true"
            params["utterances"] = "true"
        return params

    def _listen(self, audio_bytes: bytes, params: dict) -> dict:
        resp = _post(
            "Deepgram", self.url,
            headers={
                "Authorization": f"Token {self._api_key}",
                "Content-Type": "audio/mpeg",
            },
            params=params,
            data=audio_bytes,
            timeout=_timeout_for(len(audio_bytes)),
        )
        return _check_response("Deepgram", resp)

    def transcribe_segment(self, audio_bytes: bytes, hints: TranscriptionHints) -> str:
        result = self._listen(audio_bytes, self._params(hints, speakers=False))
        return extract_transcript_text(result)

    def transcribe_with_speakers(self, audio_bytes: bytes,
                                 hints: TranscriptionHints) -> SpeakerTranscript:
        result = self._listen(audio_bytes, self._params(hints, speakers=True))
        return SpeakerTranscript(
            text=extract_transcript_text(result),
            utterances=extract_utterances(result),
        )


def extract_transcript_text(deepgram_response: dict) -> str:
    """
    Extract plain text from a Deepgram response.
    Uses paragraphs if available, falls back to channels/alternatives.
    """
    try:
        alternative = deepgram_response.get('results', {}).get('channels', [{}])[0] \
            .get('alternatives', [{}])[0]

        paragraphs = alternative.get('paragraphs', {})
        if paragraphs and paragraphs.get('paragraphs'):
            parts = []
            for para in paragraphs['paragraphs']:
                para_text = ' '.join(s.get('text', '') for s in para.get('sentences', []))
                if para_text.strip():
                    parts.append(para_text.strip())
            if parts:
                return '\n\n'.join(parts)

        return (alternative.get('transcript') or '').strip()
    except (IndexError, KeyError, TypeError, AttributeError) as e:
        logger.warning("Error extracting transcript: %s", e)
    return ""


def _speaker_label(speaker) -> str:
    # 0 -> "A", 1 -> "B", ...
    if isinstance(speaker, int) and 0 <= speaker < 26:
        return chr(ord('A') + speaker)
    return str(speaker)


def extract_utterances(deepgram_response: dict) -> list[Utterance]:
    """Speaker-labelled utterances, times converted to milliseconds."""
    utterances = []
    for item in deepgram_response.get('results', {}).get('utterances') or []:
        utterances.append(Utterance(
            speaker=_speaker_label(item.get('speaker', 0)),
            text=(item.get('transcript') or '').strip(),
            start=round(float(item.get('start', 0.0)) * 1000),
            end=round(float(item.get('end', 0.0)) * 1000),
            confidence=float(item.get('confidence', 0.0)),
        ))
    return utterances


# ── Factory ───────────────────────────────────────────────────────────

_PROVIDERS = {
    ProviderName.OPENAI: (OpenAIWhisperProvider, OPENAI_API_KEY_ENV),
    ProviderName.DEEPGRAM: (DeepgramProvider, DEEPGRAM_API_KEY_ENV),
}


def resolve_provider_name(job_config: JobConfig, app_config: Optional[AppConfig] = None) -> str:
    if job_config.provider:
        name = job_config.provider
    elif job_config.enable_speaker_diarization:
        name = ProviderName.DEEPGRAM
    else:
        name = app_config.get('default_provider') if app_config else None
        name = name or ProviderName.OPENAI
    if name not in _PROVIDERS:
        raise InvalidInput(f"Unknown provider {name!r} (expected one of: {', '.join(sorted(_PROVIDERS))})")
    return name


def platform_api_key(provider: str) -> Optional[str]:
    """The operator's key for a provider, from its environment variable."""
    _, key_env = _PROVIDERS[provider]
    return os.environ.get(key_env)


def create_provider(job_config: JobConfig, app_config: Optional[AppConfig] = None) -> TranscriptionProvider:
    """
    Build the provider for a job.
    A caller-supplied key (BYOK) wins; otherwise the platform key is read
    from the provider's environment variable.
    """
    name = resolve_provider_name(job_config, app_config)
    cls, key_env = _PROVIDERS[name]
    api_key = job_config.api_key or platform_api_key(name)
    if not api_key:
        raise InvalidInput(f"No API key available for {name} (set {key_env} or supply a key)")
    logger.debug("Using %s provider (%s key)", name, "caller" if job_config.is_byok else "platform")
    return cls(api_key)


def verify_api_key(provider: str, api_key: str) -> tuple[bool, str]:
    """
    Verify a provider API key with a lightweight request.
    Returns (success, message).
    """
    if provider == ProviderName.OPENAI:
        url, headers = f"{OPENAI_API_BASE}/models", {"Authorization": f"Bearer {api_key}"}
    elif provider == ProviderName.DEEPGRAM:
        url, headers = f"{DEEPGRAM_API_BASE}/projects", {"Authorization": f"Token {api_key}"}
    else:
        return False, f"Unknown provider: {provider}"

    try:
        resp = requests.get(url, headers=headers, timeout=10)
        if resp.status_code == 200:
            return True, "Key verified"
        elif resp.status_code in (401, 403):
            return False, "Key invalid or rejected"
        else:
            return False, f"Unexpected response: {resp.status_code}"
    except requests.exceptions.ConnectionError:
        return False, f"Network error: could not reach {provider}"
    except requests.exceptions.Timeout:
        return False, "Network error: request timed out"
    except requests.exceptions.RequestException as e:
        return False, f"Network error: {e}"
