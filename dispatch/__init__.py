"""
Dispatch - live scanner ingestion and Detective Bureau analytics core.

Pipeline:
    StreamConnector / CallPoller -> audio bytes
    SpeechToText -> TranscriptFilter / DedupCache
    ExtractionGateway -> incident candidate
    CityState + AgentOrchestrator -> EventBus -> BroadcastGateway
"""

__version__ = "0.4.0"
