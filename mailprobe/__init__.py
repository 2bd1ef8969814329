"""End-to-end mail probes (IMAP and webmail) exported as Prometheus metrics."""

__version__ = "0.1.0"
