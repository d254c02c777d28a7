"""Flash-sale building blocks: in-memory store, atomic stock reservation, quotas, ID filters, metadata cache and RabbitMQ messaging."""

__version__ = "0.1.0"