"""Action surface: maps one JSON action onto the services.

Each action aborts on the first error and answers with a structured failure;
nothing after a failed step is applied. Provider calls run with no lock held,
between a locked eligibility check and a locked commit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping

from chathub.api.validation import (
    MAX_MESSAGE_LENGTH,
    MAX_NAME_LENGTH,
    MAX_PERSONALITY_LENGTH,
    MAX_PROMPT_LENGTH,
    sanitize_text,
    validate_code,
    validate_email,
    validate_history,
    validate_identifier,
    validate_password,
)
from chathub.config import HubSettings
from chathub.domain.models import UsageModel, UserModel
from chathub.logging import logger
from chathub.providers.chat import ChatProvider
from chathub.providers.images import ImageProvider
from chathub.services.auth import AuthService
from chathub.services.conversations import ConversationManager, export_transcript
from chathub.services.exceptions import (
    BotNotFound,
    InvalidInput,
    NotAuthenticated,
    PlanFeatureUnavailable,
    ProviderFailure,
    ServiceError,
    StorageError,
    UserNotFound,
)
from chathub.services.quota import QuotaEngine
from chathub.services.rate_limit import RateLimiter, subject_for
from chathub.services.subscriptions import SubscriptionService
from chathub.storage.users import UserRepository
from chathub.utils.datetime import utc_now

MAX_API_KEY_LENGTH = 512
TEMPORARILY_UNAVAILABLE = "The service is temporarily unavailable, please try again."


@dataclass(slots=True)
class RequestContext:
    user_id: str | None = None
    client_ip: str | None = None


@dataclass(slots=True)
class Attachment:
    filename: str
    content: str
    media_type: str = "text/plain; charset=utf-8"


@dataclass(slots=True)
class ActionResult:
    body: dict[str, Any]
    session_user_id: str | None = None
    clear_session: bool = False
    attachment: Attachment | None = None


Handler = Callable[[Mapping[str, Any], RequestContext], Awaitable[ActionResult]]


@dataclass(slots=True, frozen=True)
class _Route:
    handler: Handler
    requires_auth: bool


def _failure(code: str, message: str) -> dict[str, Any]:
    return {"success": False, "error": code, "message": message}


def _ok(**fields: Any) -> ActionResult:
    return ActionResult(body={"success": True, **fields})


class ActionDispatcher:
    def __init__(
        self,
        *,
        settings: HubSettings,
        repository: UserRepository,
        quota: QuotaEngine,
        rate_limiter: RateLimiter,
        conversations: ConversationManager,
        auth: AuthService,
        subscriptions: SubscriptionService,
        chat_provider: ChatProvider,
        image_provider: ImageProvider,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.quota = quota
        self.rate_limiter = rate_limiter
        self.conversations = conversations
        self.auth = auth
        self.subscriptions = subscriptions
        self.chat_provider = chat_provider
        self.image_provider = image_provider
        self._clock = clock
        self._routes: dict[str, _Route] = {
            "register": _Route(self._register, requires_auth=False),
            "verifyOtp": _Route(self._verify_otp, requires_auth=False),
            "forgotPassword": _Route(self._forgot_password, requires_auth=False),
            "resetPassword": _Route(self._reset_password, requires_auth=False),
            "login": _Route(self._login, requires_auth=False),
            "logout": _Route(self._logout, requires_auth=False),
            "checkAuth": _Route(self._check_auth, requires_auth=True),
            "createBot": _Route(self._create_bot, requires_auth=True),
            "getBots": _Route(self._get_bots, requires_auth=True),
            "getBot": _Route(self._get_bot, requires_auth=True),
            "deleteBot": _Route(self._delete_bot, requires_auth=True),
            "sendMessage": _Route(self._send_message, requires_auth=True),
            "generateImage": _Route(self._generate_image, requires_auth=True),
            "exportConversation": _Route(self._export_conversation, requires_auth=True),
            "upgradePlan": _Route(self._upgrade_plan, requires_auth=True),
            "initiatePayment": _Route(self._initiate_payment, requires_auth=True),
            "deleteAccount": _Route(self._delete_account, requires_auth=True),
        }

    @property
    def actions(self) -> tuple[str, ...]:
        return tuple(self._routes)

    async def dispatch(
        self,
        action: Any,
        payload: Mapping[str, Any] | None,
        context: RequestContext,
    ) -> ActionResult:
        route = self._routes.get(action) if isinstance(action, str) else None
        if route is None:
            logger.info("action_unknown", action=str(action)[:64])
            return ActionResult(body=_failure("invalid_action", "Invalid action"))

        try:
            if payload is None:
                payload = {}
            if not isinstance(payload, Mapping):
                raise InvalidInput("Request body must be a JSON object.")
            if route.requires_auth and not context.user_id:
                raise NotAuthenticated("Not authenticated.")

            subject = subject_for(context.user_id, context.client_ip)
            await self.rate_limiter.ensure_within_limit(subject, action)
            result = await route.handler(payload, context)
        except StorageError as exc:
            logger.warning("action_storage_unavailable", action=action, code=exc.code, error=str(exc))
            return ActionResult(body=_failure(exc.code, TEMPORARILY_UNAVAILABLE))
        except ServiceError as exc:
            logger.info("action_failed", action=action, user_id=context.user_id, code=exc.code)
            return self._failure_result(exc, context)

        await self._record(subject, action)
        logger.debug("action_completed", action=action, user_id=context.user_id)
        return result

    async def _record(self, subject: str, action: str) -> None:
        # The action already committed; a lost counter only loosens the limit.
        try:
            await self.rate_limiter.record_request(subject, action)
        except StorageError as exc:
            logger.warning("rate_limit_record_failed", action=action, subject=subject, error=str(exc))

    def _failure_result(self, exc: ServiceError, context: RequestContext) -> ActionResult:
        body = _failure(exc.code, exc.message)
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            body["retryAfter"] = retry_after
        if isinstance(exc, ProviderFailure) and exc.status_code is not None:
            body["providerStatus"] = exc.status_code
        # A session pointing at a deleted account is dropped.
        stale_session = isinstance(exc, UserNotFound) and context.user_id is not None
        return ActionResult(body=body, clear_session=stale_session)

    # Shared helpers -----------------------------------------------------------

    async def _refresh_user(self, user_id: str) -> UserModel:
        def _refresh(user: UserModel) -> UserModel:
            self.conversations.refresh(user)
            return user

        return await self.repository.update(user_id, _refresh)

    def _user_view(self, user: UserModel) -> dict[str, Any]:
        view = user.public_view()
        view["remaining"] = {
            "messages": self.quota.remaining_messages(user),
            "images": self.quota.remaining_images(user),
        }
        return view

    def _credential(self, payload: Mapping[str, Any]) -> str:
        api_key = payload.get("apiKey")
        if isinstance(api_key, str) and api_key.strip():
            api_key = api_key.strip()
            if len(api_key) > MAX_API_KEY_LENGTH:
                raise InvalidInput("apiKey is too long.")
            return api_key
        fallback = self.settings.llm.api_key
        if fallback is not None and fallback.get_secret_value():
            return fallback.get_secret_value()
        raise InvalidInput("An API key is required.")

    # Account actions ----------------------------------------------------------

    async def _register(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        name = sanitize_text(payload.get("name"), "name", max_length=MAX_NAME_LENGTH)
        email = validate_email(payload.get("email"))
        password = validate_password(
            payload.get("password"), min_length=self.settings.auth.password_min_length
        )
        await self.auth.register(name=name, email=email, password=password)
        return _ok(message="Registration complete. Check your email for the verification code.")

    async def _verify_otp(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        email = validate_email(payload.get("email"))
        code = validate_code(payload.get("code"), digits=self.settings.auth.otp_digits)
        await self.auth.verify_otp(email=email, code=code)
        return _ok(message="Email verified. You can now log in.")

    async def _forgot_password(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        email = validate_email(payload.get("email"))
        await self.auth.forgot_password(email=email)
        return _ok(message="If the address is registered, a reset code has been sent.")

    async def _reset_password(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        email = validate_email(payload.get("email"))
        code = validate_code(payload.get("code"), digits=self.settings.auth.otp_digits)
        password = validate_password(
            payload.get("newPassword"), min_length=self.settings.auth.password_min_length
        )
        await self.auth.reset_password(email=email, code=code, new_password=password)
        return _ok(message="Password updated. You can now log in.")

    async def _login(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        email = validate_email(payload.get("email"))
        password = payload.get("password")
        if not isinstance(password, str) or not password:
            raise InvalidInput("password is required.")
        user = await self.auth.login(email=email, password=password)
        user = await self._refresh_user(user.id)
        result = _ok(user=self._user_view(user))
        result.session_user_id = user.id
        return result

    async def _logout(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        result = _ok()
        result.clear_session = True
        return result

    async def _check_auth(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        user = await self._refresh_user(context.user_id)
        return _ok(user=self._user_view(user))

    async def _delete_account(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        await self.repository.delete(context.user_id)
        result = _ok(message="Account deleted.")
        result.clear_session = True
        return result

    # Bots ---------------------------------------------------------------------

    async def _create_bot(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        name = sanitize_text(payload.get("name"), "name", max_length=MAX_NAME_LENGTH)
        personality = sanitize_text(
            payload.get("personality"), "personality", max_length=MAX_PERSONALITY_LENGTH
        )
        model = payload.get("model") or self.settings.llm.default_model
        model = validate_identifier(model, "model")
        bot = await self.conversations.create_bot(
            context.user_id, name=name, personality=personality, model=model
        )
        return _ok(bot=bot.model_dump(mode="json"))

    async def _get_bots(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        bots = await self.conversations.list_bots(context.user_id)
        return _ok(bots=[bot.model_dump(mode="json") for bot in bots])

    async def _get_bot(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        bot_id = validate_identifier(payload.get("botId"), "botId")
        bot = await self.conversations.get_bot(context.user_id, bot_id)
        return _ok(bot=bot.model_dump(mode="json"))

    async def _delete_bot(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        bot_id = validate_identifier(payload.get("botId"), "botId")
        await self.conversations.delete_bot(context.user_id, bot_id)
        return _ok()

    # Chat and images ----------------------------------------------------------

    async def _send_message(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        bot_id = validate_identifier(payload.get("botId"), "botId")
        message = sanitize_text(payload.get("message"), "message", max_length=MAX_MESSAGE_LENGTH)
        history = validate_history(payload.get("history"))
        credential = self._credential(payload)

        exchange = await self.conversations.prepare_exchange(context.user_id, bot_id, history)
        reply = await self.chat_provider.generate_reply(
            system_prompt=exchange.personality,
            history=exchange.history,
            user_message=message,
            model=exchange.model,
            credential=credential,
        )
        outcome = await self.conversations.record_exchange(
            context.user_id,
            bot_id,
            user_message=message,
            reply=reply,
            client_history=history,
        )
        return _ok(
            response=outcome.reply,
            usage=outcome.usage.model_dump(mode="json", by_alias=True),
            conversation=[turn.model_dump(mode="json") for turn in outcome.conversation],
            nearLimit=outcome.near_limit,
            nearQuota=outcome.near_quota,
        )

    async def _generate_image(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        prompt = sanitize_text(payload.get("prompt"), "prompt", max_length=MAX_PROMPT_LENGTH)
        bot_id = payload.get("botId")
        if bot_id is not None:
            bot_id = validate_identifier(bot_id, "botId")
        credential = self._credential(payload)

        def _check(user: UserModel) -> None:
            self.conversations.refresh(user)
            self.quota.ensure_can_generate_image(user)
            if bot_id is not None and user.find_bot(bot_id) is None:
                raise BotNotFound("Bot not found.")

        await self.repository.update(context.user_id, _check)
        image_url = await self.image_provider.generate_image(prompt=prompt, credential=credential)

        def _commit(user: UserModel) -> tuple[UsageModel, int | None]:
            self.conversations.refresh(user)
            user.usage.images += 1
            return user.usage.model_copy(), self.quota.remaining_images(user)

        usage, remaining = await self.repository.update(context.user_id, _commit)
        logger.info("image_generated", user_id=context.user_id, images_used=usage.images)
        return _ok(
            imageUrl=image_url,
            usage=usage.model_dump(mode="json", by_alias=True),
            remainingImages=remaining,
        )

    async def _export_conversation(
        self, payload: Mapping[str, Any], context: RequestContext
    ) -> ActionResult:
        bot_id = validate_identifier(payload.get("botId"), "botId")
        user = await self._refresh_user(context.user_id)
        if user.plan != "premium":
            raise PlanFeatureUnavailable("Conversation export is available on the premium plan.")
        bot = user.find_bot(bot_id)
        if bot is None:
            raise BotNotFound("Bot not found.")

        filename = f"conversation-{bot.id}.txt"
        result = _ok(filename=filename)
        result.attachment = Attachment(
            filename=filename,
            content=export_transcript(bot, exported_at=self._clock()),
        )
        logger.info("conversation_exported", user_id=user.id, bot_id=bot.id, turns=len(bot.conversations))
        return result

    # Plans --------------------------------------------------------------------

    async def _upgrade_plan(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        plan = payload.get("plan")
        if not isinstance(plan, str) or not plan:
            raise InvalidInput("plan is required.")
        user = await self.subscriptions.upgrade_plan(context.user_id, plan.strip())
        return _ok(message="Plan updated.", user=self._user_view(user))

    async def _initiate_payment(self, payload: Mapping[str, Any], context: RequestContext) -> ActionResult:
        plan = payload.get("plan")
        if not isinstance(plan, str) or not plan:
            raise InvalidInput("plan is required.")
        payment = await self.subscriptions.initiate_payment(context.user_id, plan.strip())
        return _ok(payment=payment.model_dump(mode="json"))


__all__ = ["ActionDispatcher", "ActionResult", "Attachment", "RequestContext"]
