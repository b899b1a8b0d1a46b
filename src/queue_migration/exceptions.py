class RelayError(Exception):
    pass


class ConfigurationError(RelayError):
    pass


class BrokerConnectionError(RelayError):
    def __init__(self, role: str, address: str, reason: str) -> None:
        self.role = role
        self.address = address
        super().__init__(f"Failed to connect to {role} broker at '{address}': {reason}")


class SourceQueueNotFound(RelayError):
    def __init__(self, queue_name: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"Source queue {queue_name!r} does not exist")


class SourceQueueInUse(RelayError):
    def __init__(self, queue_name: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"Source queue {queue_name!r} is in exclusive use by another consumer")
