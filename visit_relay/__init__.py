"""Visit relay: Matomo visit ingestion with filtered RabbitMQ delivery."""
