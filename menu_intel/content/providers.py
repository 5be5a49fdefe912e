"""
Generative content providers

The provider set is closed: Anthropic through its SDK, OpenAI and Google
over HTTP through RateLimitedClient. Every adapter exposes
generate(prompt_data, capability) and raises ApiError subclasses on failure.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import anthropic
import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_random_exponential

from menu_intel.errors import ApiError, ConfigurationError, InvalidRequest, RateLimited, TransientUpstream
from utils.rate_limiter import RateLimitedClient, TokenBucket

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert restaurant menu consultant. Follow the requested output "
    "format exactly and do not add commentary outside it."
)


class ProviderName(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


@dataclass
class ProviderResponse:
    """Raw text returned by a provider"""
    text: str
    provider: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)


class ContentProvider:
    """Base class for provider adapters"""

    name: ProviderName

    def __init__(self, model: str, max_tokens: int = 2000, temperature: float = 0.7):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def generate(self, prompt_data: Dict, capability: str) -> ProviderResponse:
        """
        Run one prompt

        Args:
            prompt_data: Output of PromptEngine.create_prompt
            capability: Capability name, used for logging

        Raises:
            ApiError: on any upstream failure
        """
        raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}(model={self.model!r})"


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ApiError) and error.retryable


class AnthropicProvider(ContentProvider):
    """Claude via the official SDK"""

    name = ProviderName.ANTHROPIC

    def __init__(self, api_key: str, bucket: TokenBucket, model: str = 'claude-sonnet-4-20250514',
                 max_tokens: int = 2000, temperature: float = 0.7, timeout: float = 60,
                 max_retries: int = 2, backoff_base: float = 0.5, backoff_max: float = 8.0,
                 client: Optional[anthropic.Anthropic] = None):
        super().__init__(model, max_tokens, temperature)
        self.bucket = bucket
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        # SDK retries disabled; generate() retries and spends a token per attempt
        self.client = client or anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def generate(self, prompt_data: Dict, capability: str) -> ProviderResponse:
        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_random_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            reraise=True,
        )
        return retrying(self._create_message, prompt_data, capability)

    def _create_message(self, prompt_data: Dict, capability: str) -> ProviderResponse:
        self.bucket.acquire()
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt_data['prompt']}],
            )
        except anthropic.APIStatusError as e:
            if e.status_code == 429:
                raise RateLimited(f"Anthropic rate limited: {e}", status_code=429)
            if e.status_code >= 500:
                raise TransientUpstream(f"Anthropic server error: {e}", status_code=e.status_code)
            raise InvalidRequest(f"Anthropic rejected request: {e}", status_code=e.status_code)
        except anthropic.APIConnectionError as e:
            # Also covers APITimeoutError
            raise TransientUpstream(f"Anthropic unreachable: {e}")
        except anthropic.APIResponseValidationError as e:
            raise InvalidRequest(f"Anthropic response failed SDK validation: {e}",
                                 status_code=e.status_code)
        except anthropic.APIError as e:
            raise InvalidRequest(f"Anthropic SDK error: {e}")

        text = ''.join(
            block.text for block in response.content if getattr(block, 'type', 'text') == 'text'
        )
        usage = {}
        if getattr(response, 'usage', None) is not None:
            usage = {
                'input_tokens': response.usage.input_tokens,
                'output_tokens': response.usage.output_tokens,
            }
        logger.debug(f"Anthropic {self.model} answered {capability} ({len(text)} chars)")
        return ProviderResponse(text=text, provider=self.name.value, model=self.model, usage=usage)


class OpenAIProvider(ContentProvider):
    """Chat completions over HTTP"""

    name = ProviderName.OPENAI

    def __init__(self, client: RateLimitedClient, api_key: str, model: str = 'gpt-4-turbo',
                 base_url: str = 'https://api.openai.com/v1', max_tokens: int = 2000,
                 temperature: float = 0.7):
        super().__init__(model, max_tokens, temperature)
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')

    def generate(self, prompt_data: Dict, capability: str) -> ProviderResponse:
        payload = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': SYSTEM_PROMPT},
                {'role': 'user', 'content': prompt_data['prompt']},
            ],
            'max_tokens': self.max_tokens,
            'temperature': self.temperature,
        }
        data = self.client.post_json(
            f"{self.base_url}/chat/completions",
            payload,
            headers={'Authorization': f"Bearer {self.api_key}"},
        )

        try:
            text = data['choices'][0]['message']['content'] or ''
        except (KeyError, IndexError, TypeError):
            raise InvalidRequest("OpenAI response has no choices")

        usage = data.get('usage') or {}
        return ProviderResponse(
            text=text,
            provider=self.name.value,
            model=self.model,
            usage={
                'input_tokens': usage.get('prompt_tokens', 0),
                'output_tokens': usage.get('completion_tokens', 0),
            },
        )


class GoogleProvider(ContentProvider):
    """Gemini generateContent over HTTP"""

    name = ProviderName.GOOGLE

    def __init__(self, client: RateLimitedClient, api_key: str, model: str = 'gemini-pro',
                 base_url: str = 'https://generativelanguage.googleapis.com/v1beta',
                 max_tokens: int = 2000, temperature: float = 0.7):
        super().__init__(model, max_tokens, temperature)
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')

    def generate(self, prompt_data: Dict, capability: str) -> ProviderResponse:
        payload = {
            'systemInstruction': {'parts': [{'text': SYSTEM_PROMPT}]},
            'contents': [{'role': 'user', 'parts': [{'text': prompt_data['prompt']}]}],
            'generationConfig': {
                'maxOutputTokens': self.max_tokens,
                'temperature': self.temperature,
            },
        }
        data = self.client.post_json(
            f"{self.base_url}/models/{self.model}:generateContent",
            payload,
            params={'key': self.api_key},
        )

        try:
            parts = data['candidates'][0]['content']['parts']
        except (KeyError, IndexError, TypeError):
            raise InvalidRequest("Google response has no candidates")

        text = ''.join(part.get('text', '') for part in parts)
        return ProviderResponse(text=text, provider=self.name.value, model=self.model)


def build_providers(settings: Dict, session: Optional[requests.Session] = None) -> List[ContentProvider]:
    """
    Instantiate providers in configured order

    Providers without an API key are skipped with a warning. One token bucket
    is created per provider.
    """
    config = settings['providers']
    retry_config = settings['taste_graph']
    providers: List[ContentProvider] = []

    for name in config['order']:
        try:
            provider_name = ProviderName(name)
        except ValueError:
            raise ConfigurationError(f"Unknown LLM provider: {name}")

        options = config.get(name, {})
        api_key = options.get('api_key')
        if not api_key:
            logger.warning(f"No API key for {name}, provider disabled")
            continue

        bucket = TokenBucket(rate=options.get('rate', 2), name=name)
        common = {
            'model': options['model'],
            'max_tokens': options.get('max_tokens', 2000),
            'temperature': options.get('temperature', 0.7),
        }

        if provider_name is ProviderName.ANTHROPIC:
            providers.append(AnthropicProvider(
                api_key,
                bucket,
                timeout=options.get('timeout', 60),
                max_retries=retry_config['max_retries'],
                backoff_base=retry_config['backoff_base'],
                backoff_max=retry_config['backoff_max'],
                **common,
            ))
            continue

        http_client = RateLimitedClient(
            bucket,
            max_retries=retry_config['max_retries'],
            backoff_base=retry_config['backoff_base'],
            backoff_max=retry_config['backoff_max'],
            timeout=options.get('timeout', 60),
            session=session,
        )
        if provider_name is ProviderName.OPENAI:
            providers.append(OpenAIProvider(http_client, api_key, base_url=options['base_url'], **common))
        else:
            providers.append(GoogleProvider(http_client, api_key, base_url=options['base_url'], **common))

    logger.info(f"Content providers: {[p.name.value for p in providers] or 'none'}")
    return providers
