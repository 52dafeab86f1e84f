"""
Domain layer for document conversion.
Provides interfaces (gateways), local adapters for state, staged files and
conversion engines, and the service that runs each request's lifecycle, so
the Telegram front end (webhook or polling) can share the same core logic.
"""

from .interfaces import BotGateway, ConverterGateway, StagedFile, StagedRole, StagingGateway, StateGateway, UserConfig
from .service import AdapterResponse, AdmissionTracker, ConversionRequest, ConversionService, RequestState, ResponseStatus
