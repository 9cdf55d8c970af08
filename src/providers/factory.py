"""Provider adapter factory.

Resolves a provider tag to its adapter implementation. The set of
providers is closed: anything else is a configuration error.
"""

import logging
from typing import Union

import httpx

from src.providers.azure_batch import AzureBatchAdapter
from src.providers.whisper import AzureWhisperAdapter, OpenAIWhisperAdapter
from src.transcription.errors import ConfigurationError
from src.transcription.polling import PollingEngine
from src.transcription.schemas import ProviderKind

logger = logging.getLogger(__name__)

ADAPTERS = {
    ProviderKind.AZURE_BATCH: AzureBatchAdapter,
    ProviderKind.OPENAI_WHISPER: OpenAIWhisperAdapter,
    ProviderKind.AZURE_WHISPER: AzureWhisperAdapter,
}


def get_adapter(
    provider: Union[ProviderKind, str],
    client: httpx.AsyncClient,
    polling_engine: PollingEngine,
) -> Union[AzureBatchAdapter, OpenAIWhisperAdapter, AzureWhisperAdapter]:
    """Get the adapter for a provider tag.

    Raises:
        ConfigurationError: If the provider is not supported
    """
    try:
        kind = ProviderKind(provider)
    except ValueError:
        supported = ", ".join(k.value for k in ProviderKind)
        raise ConfigurationError(
            f"Unsupported provider: '{provider}'. Expected one of: {supported}."
        ) from None
    return ADAPTERS[kind](client, polling_engine)
