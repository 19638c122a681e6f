from chathub.api.actions import ActionDispatcher, ActionResult, Attachment, RequestContext
from chathub.api.server import create_app

__all__ = ["ActionDispatcher", "ActionResult", "Attachment", "RequestContext", "create_app"]
