"""Direct-messaging engine: client-side message store, realtime routing,
presence and conversation directory, plus a reference backend service."""

__version__ = "0.1.0"
