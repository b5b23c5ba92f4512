class ArenaError(Exception):
    status_code = 500

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "type": self.__class__.__name__}


class ValidationError(ArenaError):
    """Malformed join or move request. Nothing was changed."""
    status_code = 400


class StateConflict(ArenaError):
    status_code = 409

    def __init__(self, state: str, action: str, reason: str = None):
        self.state = state
        self.action = action
        super().__init__(reason or f"Cannot {action} while {state}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["state"] = self.state
        data["action"] = self.action
        return data


class ResourceNotFound(ArenaError):
    status_code = 404

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class TransientInfrastructureError(ArenaError):
    """Ledger or broker failure that may succeed on retry."""
    status_code = 503
