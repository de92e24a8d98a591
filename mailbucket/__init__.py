"""Mail testing toolkit: POP3 server, REST API handlers, monitor listeners and REST client."""

__version__ = "0.1.0"