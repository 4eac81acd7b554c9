"""
Error taxonomy for the config/backup/icon layers.

Every error carries the HTTP status and snake_case code the Flask error
handler renders as {"error": code, "msg": text}.
"""


class HomedashError(Exception):
    status = 500
    code = "internal_error"

    def __init__(self, msg: str = "", **extra):
        super().__init__(msg or self.code)
        self.msg = msg or self.code
        self.extra = extra

    def to_json(self):
        return {"error": self.code, "msg": self.msg, **self.extra}


class ValidationError(HomedashError):
    status = 400
    code = "validation_error"


class StoreCorrupted(HomedashError):
    status = 500
    code = "store_corrupted"


class InvalidSource(HomedashError):
    status = 500
    code = "invalid_source"


class InvalidBackup(HomedashError):
    status = 400
    code = "invalid_backup"


class PathTraversal(HomedashError):
    status = 400
    code = "path_traversal"


class NotFound(HomedashError):
    status = 404
    code = "not_found"


class InvalidURL(HomedashError):
    status = 400
    code = "invalid_url"


class Conflict(HomedashError):
    status = 409
    code = "conflict"
