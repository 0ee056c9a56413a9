import asyncio
import html
import logging
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional

import aiohttp

from ingest.errors import SourceHTTPError, SourceShapeError
from ingest.rest_client import RESTClient
from strategy.signal_classifier import Signal, SignalKind


logger = logging.getLogger(__name__)

# Hard allow-list; configuration can only narrow it.
DELIVERABLE_KINDS = frozenset({SignalKind.GOLDEN, SignalKind.EXIT})

_HEADERS = {
    SignalKind.GOLDEN: "🏆 <b>⚡ GOLDEN SIGNAL</b>",
    SignalKind.EXIT: "🛑 <b>📉 EXIT SIGNAL</b>",
    SignalKind.MOMENTUM: "🚀 <b>📈 MOMENTUM</b>",
    SignalKind.SUPPORT: "🛡 <b>SUPPORT</b>",
}

TEST_MESSAGE = (
    "🔔 <b>VWAP Signal Engine Test Alert</b>\n\n"
    "✅ Connection successful!\nYou will receive GOLDEN and EXIT alerts here."
)


@dataclass
class NotificationConfig:
    bot_token: str = ''
    chat_ids: str = ''
    enabled: bool = False

    def recipients(self) -> List[str]:
        return [c.strip() for c in str(self.chat_ids or '').split(',') if c.strip()]

    def is_usable(self) -> bool:
        return bool(self.enabled and self.bot_token and self.recipients())

    def to_dict(self) -> Dict:
        return asdict(self)

    def redacted(self) -> Dict:
        data = self.to_dict()
        if self.bot_token:
            data['bot_token'] = f"***{self.bot_token[-4:]}"
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'NotificationConfig':
        if not isinstance(data, dict):
            return cls()
        chat_ids = data.get('chat_ids', data.get('chat_id', ''))
        if isinstance(chat_ids, (list, tuple)):
            chat_ids = ','.join(str(c) for c in chat_ids)
        return cls(
            bot_token=str(data.get('bot_token') or ''),
            chat_ids=str(chat_ids or ''),
            enabled=bool(data.get('enabled', False)),
        )


def _fmt_price(value: float) -> str:
    text = f"{value:,.8f}".rstrip('0').rstrip('.')
    return text or '0'


def render_signal_message(signal: Signal, dashboard_url: Optional[str] = None) -> str:
    ticker = signal.ticker
    change = ticker.change_pct_24h
    score_label = 'Exit' if signal.kind is SignalKind.EXIT else 'Buy'
    lines = [
        _HEADERS.get(signal.kind, f"<b>{signal.kind.value}</b>"),
        "",
        f"<b>Token:</b> {html.escape(ticker.pair)}",
        f"<b>Price:</b> ${_fmt_price(ticker.price)}",
        f"<b>24h Change:</b> {'+' if change >= 0 else ''}{change:.2f}%",
        f"<b>{score_label} Score:</b> {signal.score:.0f}/100",
        "",
        "<b>VWAP Levels:</b>",
        f"  🟢 Target (Max): ${_fmt_price(signal.levels.max)}",
        f"  🔴 Stop (Mid): ${_fmt_price(signal.levels.mid)}",
        "",
        f"<b>Verdict:</b> {html.escape(signal.reason)}",
    ]
    if dashboard_url:
        lines += ["", f'📊 <a href="{html.escape(dashboard_url, quote=True)}">Open dashboard</a>']
    return "\n".join(lines)


class TelegramTransport:
    """Bot API sendMessage; a recipient accepts a message iff the reply carries ``ok: true``."""

    def __init__(self, api_url: str = 'https://api.telegram.org', timeout_s: float = 10.0):
        self.client = RESTClient(api_url, timeout_s=timeout_s)

    async def send_message(self, token: str, chat_id: str, text: str) -> bool:
        body = {
            'chat_id': chat_id,
            'text': text,
            'parse_mode': 'HTML',
            'disable_web_page_preview': True,
        }
        try:
            reply = await self.client.post(f"/bot{token}/sendMessage", json_body=body)
        except SourceHTTPError as exc:
            # the URL embeds the bot token; log the status only
            logger.warning("Telegram rejected message for chat %s: HTTP %s %s", chat_id, exc.status, exc.msg or '')
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError, SourceShapeError) as exc:
            logger.warning("Telegram send error (chat %s): %s", chat_id, type(exc).__name__)
            return False
        return isinstance(reply, dict) and reply.get('ok') is True

    async def close(self):
        await self.client.close()


class AlertDispatcher:
    """Deduplicated delivery of GOLDEN/EXIT signals to every configured recipient.

    A symbol is marked with the kind it was alerted for once at least one
    recipient accepts. The mark is cleared as soon as the symbol shows up with a
    different kind or without a signal, which re-arms the next occurrence.
    """

    def __init__(self, config: Optional[Dict] = None, transport=None, persistence=None, metrics=None):
        config = config or {}
        self.transport = transport or TelegramTransport(config.get('telegram_api_url', 'https://api.telegram.org'))
        self.persistence = persistence
        self.metrics = metrics
        self.dashboard_url = config.get('dashboard_url') or None

        kinds = {SignalKind(k) for k in config.get('eligible_kinds', [k.value for k in DELIVERABLE_KINDS])}
        self.eligible_kinds = frozenset(kinds) & DELIVERABLE_KINDS

        self.config = NotificationConfig.from_dict({
            'bot_token': config.get('bot_token', ''),
            'chat_ids': config.get('chat_ids', ''),
            'enabled': config.get('enabled', bool(config.get('bot_token'))),
        })
        if persistence is not None:
            stored = persistence.load_notification_config()
            if stored is not None:
                self.config = NotificationConfig.from_dict(stored)

        self._alerted: Dict[str, SignalKind] = {}

    def was_alerted(self, symbol: str, kind: SignalKind) -> bool:
        return self._alerted.get(symbol) is kind

    def update_config(self, new_config: NotificationConfig) -> NotificationConfig:
        self.config = new_config
        if self.persistence is not None:
            self.persistence.save_notification_config(new_config.to_dict())
        logger.info(
            "Notification config updated (enabled=%s, recipients=%s)",
            new_config.enabled,
            len(new_config.recipients()),
        )
        return self.config

    async def _broadcast(self, text: str) -> bool:
        cfg = self.config
        recipients = cfg.recipients()
        results = await asyncio.gather(
            *(self.transport.send_message(cfg.bot_token, chat_id, text) for chat_id in recipients),
            return_exceptions=True,
        )
        for chat_id, result in zip(recipients, results):
            if isinstance(result, BaseException):
                logger.warning("Alert delivery to chat %s raised %s: %s", chat_id, type(result).__name__, result)
        return any(r is True for r in results)

    async def notify(self, signals: Iterable[Signal]) -> int:
        signals = list(signals)
        current = {s.symbol_id: s.kind for s in signals}
        for symbol, kind in list(self._alerted.items()):
            if current.get(symbol) is not kind:
                del self._alerted[symbol]

        if not self.config.is_usable():
            return 0

        delivered = 0
        for sig in signals:
            if sig.kind not in self.eligible_kinds or self.was_alerted(sig.symbol_id, sig.kind):
                continue
            ok = await self._broadcast(render_signal_message(sig, self.dashboard_url))
            if self.metrics is not None:
                self.metrics.record_alert(sig.kind.value, ok)
            if ok:
                self._alerted[sig.symbol_id] = sig.kind
                delivered += 1
                logger.info("Sent %s alert for %s", sig.kind.value, sig.symbol_id)
            else:
                logger.warning("%s alert for %s was not accepted by any recipient", sig.kind.value, sig.symbol_id)
        return delivered

    async def send_test_alert(self) -> bool:
        cfg = self.config
        if not cfg.bot_token or not cfg.recipients():
            return False
        return await self._broadcast(TEST_MESSAGE)

    async def close(self):
        close = getattr(self.transport, 'close', None)
        if close is not None:
            await close()
