"""woof-guard: rate limiting and security monitoring for the Woof Meetup API."""

__version__ = "0.1.0"
