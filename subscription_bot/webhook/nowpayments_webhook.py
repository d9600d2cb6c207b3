"""Webhook сервер для обработки уведомлений от NOWPayments"""
import logging

from aiohttp import web

from subscription_bot.clients.nowpayments import SIGNATURE_HEADER
from subscription_bot.errors import InvalidSignatureError, MalformedPayloadError
from subscription_bot.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", ReconciliationEngine)


async def handle_ipn(request: web.Request) -> web.Response:
    """
    IPN от NOWPayments.

    400 - неверная подпись или тело; 200 - уведомление принято
    (в том числе повтор или неизвестный платеж); 500 - внутренняя ошибка,
    NOWPayments повторит доставку.
    """
    engine = request.app[ENGINE_KEY]
    raw_body = await request.read()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        outcome = await engine.handle_webhook(signature, raw_body)
    except InvalidSignatureError as e:
        logger.error(f"Неверная подпись webhook: {e}")
        return web.json_response({"error": "invalid signature"}, status=400)
    except MalformedPayloadError as e:
        logger.error(f"Некорректный webhook: {e}")
        return web.json_response({"error": "malformed payload"}, status=400)
    except Exception as e:
        logger.error(f"Ошибка обработки webhook: {e}")
        return web.json_response({"error": "internal error"}, status=500)

    return web.json_response({"status": outcome.value})


async def handle_success(request: web.Request) -> web.Response:
    """Редирект после успешной оплаты"""
    return web.Response(
        text="✅ Оплата прошла успешно! Вернитесь в бот, доступ будет выдан после подтверждения.",
        content_type="text/html",
        charset="utf-8",
    )


async def handle_cancel(request: web.Request) -> web.Response:
    return web.Response(
        text="❌ Оплата отменена. Вы можете выбрать тариф в боте и попробовать снова.",
        content_type="text/html",
        charset="utf-8",
    )


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_webhook_app(engine: ReconciliationEngine) -> web.Application:
    """Создает aiohttp приложение для webhook"""
    app = web.Application()
    app[ENGINE_KEY] = engine

    app.router.add_post("/webhooks/nowpayments", handle_ipn)
    app.router.add_get("/payment/success", handle_success)
    app.router.add_get("/payment/cancel", handle_cancel)
    app.router.add_get("/health", handle_health)

    return app
