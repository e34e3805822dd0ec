"""Transport adapters (in-memory double and RabbitMQ via aio-pika)."""
