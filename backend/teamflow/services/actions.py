"""Workflow actions: the handlers that perform side effects and the registry that dispatches to them."""

import asyncio
import logging
import re
from typing import Any

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamflow.config import Settings
from teamflow.exceptions import ActionExecutionError, TeamflowError, UnsupportedActionKind
from teamflow.models.records import Channel, Document, Message, Task
from teamflow.models.user import User

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{(.+?)\}\}")


def _lookup(data: Any, path: str) -> Any:
    value = data
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def render_config(config: Any, trigger_data: Any) -> Any:
    """Replace {{key}} placeholders in string values with trigger data.

    Dotted keys reach into nested objects. Placeholders that do not resolve
    are left as written.
    """
    if not isinstance(trigger_data, dict) or not trigger_data:
        return config

    if isinstance(config, dict):
        return {key: render_config(value, trigger_data) for key, value in config.items()}
    if isinstance(config, list):
        return [render_config(item, trigger_data) for item in config]
    if not isinstance(config, str):
        return config

    def replace_match(m: re.Match) -> str:
        value = _lookup(trigger_data, m.group(1).strip())
        return str(value) if value is not None else m.group(0)

    return _PLACEHOLDER_RE.sub(replace_match, config)


# ── Handlers ──────────────────────────────────────────────────────────────


class ActionHandler:
    """Base class for one kind of workflow action.

    Subclasses set ``action_type`` and implement ``execute``, returning a
    JSON-serialisable description of what happened. Failures are raised as
    ``ActionExecutionError``.
    """

    action_type: str = ""

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        raise NotImplementedError

    def fail(self, message: str) -> ActionExecutionError:
        return ActionExecutionError(self.action_type, message)

    def require(self, config: dict, *keys: str) -> None:
        missing = [key for key in keys if config.get(key) in (None, "")]
        if missing:
            raise self.fail(f"{self.action_type} requires {', '.join(repr(k) for k in missing)}")


class RecordActionHandler(ActionHandler):
    """Handler that writes workspace records through its own session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory


class SendEmailAction(ActionHandler):
    action_type = "send_email"

    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "ses",
                region_name=self.settings.AWS_REGION,
                aws_access_key_id=self.settings.AWS_ACCESS_KEY_ID or None,
                aws_secret_access_key=self.settings.AWS_SECRET_ACCESS_KEY or None,
            )
        return self._client

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.require(config, "to")
        to = config["to"]
        recipients = [to] if isinstance(to, str) else list(to)
        subject = config.get("subject", "")
        body = config.get("body", "")

        if self.settings.EMAIL_BACKEND != "ses":
            logger.info(f"Email to {', '.join(recipients)} accepted by log backend: {subject}")
            return {"message": "Email sent successfully", "recipients": recipients}

        message_id = await asyncio.to_thread(self._send_ses, recipients, subject, body)
        logger.info(f"Email {message_id} accepted by SES for {', '.join(recipients)}")
        return {"message": "Email sent successfully", "recipients": recipients, "messageId": message_id}

    def _send_ses(self, recipients: list[str], subject: str, body: str) -> str:
        try:
            response = self.client.send_email(
                Source=self.settings.EMAIL_SENDER,
                Destination={"ToAddresses": recipients},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Text": {"Data": body}},
                },
            )
        except ClientError as e:
            error = e.response.get("Error", {})
            raise self.fail(f"Email rejected: {error.get('Message') or error.get('Code') or e}") from e
        except BotoCoreError as e:
            raise self.fail(f"Email service unavailable: {e}") from e
        return response["MessageId"]


class CreateTaskAction(RecordActionHandler):
    action_type = "create_task"

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.require(config, "title")
        async with self.session_factory() as db:
            task = Task(
                workspace_id=config.get("workspaceId"),
                title=config["title"],
                description=config.get("description"),
                assignee_id=config.get("assignee"),
            )
            db.add(task)
            await db.commit()
            logger.info(f"Created task {task.id}: {task.title}")
            return {"message": "Task created successfully", "taskId": task.id}


class SendMessageAction(RecordActionHandler):
    action_type = "send_message"

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.require(config, "channelId", "message")
        async with self.session_factory() as db:
            channel = await db.get(Channel, config["channelId"])
            if channel is None:
                raise self.fail(f"Channel {config['channelId']} not found")

            message = Message(channel_id=channel.id, user_id=config.get("userId"), content=str(config["message"]))
            db.add(message)
            await db.commit()
            logger.info(f"Posted message {message.id} to channel {channel.id}")
            return {"message": "Message sent successfully", "messageId": message.id}


class CreateDocumentAction(RecordActionHandler):
    action_type = "create_document"

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.require(config, "title")
        async with self.session_factory() as db:
            document = Document(
                workspace_id=config.get("workspaceId"),
                title=config["title"],
                content=config.get("content") or "",
                created_by=config.get("userId"),
            )
            db.add(document)
            await db.commit()
            logger.info(f"Created document {document.id}: {document.title}")
            return {"message": "Document created successfully", "documentId": document.id}


class UpdateUserAction(RecordActionHandler):
    action_type = "update_user"
    updatable_fields = ("name", "avatar", "email")

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.require(config, "userId")
        updates = config.get("updates") or {}
        if not isinstance(updates, dict) or not updates:
            raise self.fail("update_user requires a non-empty 'updates' object")
        unknown = sorted(set(updates) - set(self.updatable_fields))
        if unknown:
            raise self.fail(f"Cannot update user fields: {', '.join(unknown)}")

        async with self.session_factory() as db:
            user = await db.get(User, config["userId"])
            if user is None:
                raise self.fail(f"User {config['userId']} not found")
            for field, value in updates.items():
                setattr(user, field, value)
            await db.commit()
            logger.info(f"Updated user {user.id}: {', '.join(sorted(updates))}")
            return {"message": "User updated successfully", "userId": user.id, "updated": sorted(updates)}


class ApiCallAction(ActionHandler):
    action_type = "api_call"

    def __init__(self, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.transport = transport

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.require(config, "url")
        url = config["url"]
        method = str(config.get("method") or "GET").upper()
        data = config.get("data")
        headers = config.get("headers") or None

        request_kwargs: dict = {"headers": headers}
        if method == "GET":
            if isinstance(data, dict):
                request_kwargs["params"] = data
        elif data is not None:
            request_kwargs["json"] = data

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.HTTPError as e:
            raise self.fail(f"API call to {url} failed: {e}") from e

        if response.is_error:
            raise self.fail(f"API call to {url} returned status {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = response.text
        logger.info(f"API call {method} {url} returned {response.status_code}")
        return {"message": "API call completed successfully", "status": response.status_code, "body": body}


# ── Registry ──────────────────────────────────────────────────────────────


class ActionRegistry:
    """Maps action type strings to the handler that performs them."""

    def __init__(self):
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, handler: ActionHandler, action_type: str | None = None) -> None:
        action_type = action_type or handler.action_type
        if not action_type:
            raise ValueError("Action handler has no action_type")
        self._handlers[action_type] = handler

    def unregister(self, action_type: str) -> None:
        self._handlers.pop(action_type, None)

    def get(self, action_type: str | None) -> ActionHandler:
        handler = self._handlers.get(action_type) if isinstance(action_type, str) else None
        if handler is None:
            raise UnsupportedActionKind(action_type)
        return handler

    @property
    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, action: dict, trigger_data: Any = None) -> Any:
        """Execute one ``{type, config}`` action descriptor and return its result."""
        if not isinstance(action, dict):
            raise UnsupportedActionKind(None)
        action_type = action.get("type")
        handler = self.get(action_type)
        config = render_config(action.get("config") or {}, trigger_data)

        try:
            return await handler.execute(config, trigger_data)
        except TeamflowError:
            raise
        except Exception as e:
            raise ActionExecutionError(action_type, str(e) or e.__class__.__name__) from e


def build_default_registry(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> ActionRegistry:
    registry = ActionRegistry()
    registry.register(SendEmailAction(settings))
    registry.register(CreateTaskAction(session_factory))
    registry.register(SendMessageAction(session_factory))
    registry.register(CreateDocumentAction(session_factory))
    registry.register(UpdateUserAction(session_factory))
    registry.register(ApiCallAction(timeout=settings.ACTION_TIMEOUT_SECONDS))
    return registry
