"""ScribeLink: record audio into durable segments and deliver them to a remote backend."""

__version__ = "0.1.0"
