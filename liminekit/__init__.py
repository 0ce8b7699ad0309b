"""Host-side tools for the Limine boot protocol: disk deployment, DEFLATE/gzip, GPT and protocol records."""

__version__ = "0.1.0"
__all__ = ["deploy", "device", "gpt", "inflate", "protocol", "version"]