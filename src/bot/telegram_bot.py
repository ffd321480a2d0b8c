#!/usr/bin/env python3
"""
Autopilot Operator Bot

Telegram front end for the autopilot control plane:
  /status           - scheduler state and tick counters
  /breakers         - circuit breaker states
  /reset <name|all> - reset a circuit breaker
  /trigger [kind]   - run one processing task now (default: all)
  /start_scheduler  - start the periodic scheduler
  /stop_scheduler   - stop it
  /ratelimits       - per-endpoint rate limit windows
  /scraping         - scrape limiter status

Usage:
  TELEGRAM_BOT_TOKEN=your_token python -m bot.telegram_bot
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Set

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes

from autopilot.config import as_bool, load_config
from autopilot.control import ControlPlane, build_control_plane
from autopilot.errors import AutopilotError

logging.basicConfig(
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)

CONTROL_KEY = "control"
MAX_MESSAGE = 4000


# ── Rendering ──

def format_scheduler(status: Dict[str, Any]) -> str:
    lines = [
        f"Scheduler: {'RUNNING' if status['isRunning'] else 'STOPPED'}",
        f"Interval: {status['intervalSeconds']}s",
        f"Tasks: {', '.join(status['tasks'])}",
        f"Ticks: {status['ticks']} (skipped: {status['skippedTicks']})",
    ]
    if status.get("tickInProgress"):
        lines.append("A tick is in progress")
    if status.get("lastError"):
        lines.append(f"Last error: {status['lastError']}")
    return "\n".join(lines)


def format_breakers(payload: Dict[str, Any]) -> str:
    summary = payload["summary"]
    lines = [
        f"Circuit breakers: {summary['totalCircuits']} "
        f"(open {summary['openCircuits']}, half-open {summary['halfOpenCircuits']})"
    ]
    for name, state in payload["circuitBreakers"].items():
        line = f"  {name}: {state['state']} ({state['failures']} failures)"
        if state.get("nextAttempt"):
            line += f", next attempt {state['nextAttempt']}"
        lines.append(line)
    return "\n".join(lines)


def format_rate_limits(payload: Dict[str, Any]) -> str:
    lines = [f"Rate limited endpoints: {payload['summary']['rateLimitedEndpoints']}"]
    for endpoint, status in payload["rateLimits"].items():
        line = f"  {endpoint}: {status['remaining']} left"
        if not status["allowed"]:
            line += f", resets in {status['timeUntilReset']:.0f}s"
        lines.append(line)
    return "\n".join(lines)


def format_scraping(payload: Dict[str, Any]) -> str:
    lines = [
        f"Scraping: {'enabled' if payload['scrapingEnabled'] else 'disabled'}",
        f"Attempts this hour: {payload['attemptsInLastHour']}/{payload['maxAttempts']}",
        f"Users this hour: {payload['usersInLastHour']}/{payload['maxUsers']}",
        f"Can scrape now: {'yes' if payload['canScrapeNow'] else 'no'}",
    ]
    if not payload["canScrapeNow"] and payload.get("reason"):
        lines.append(f"Reason: {payload['reason']}")
    if payload.get("nextAllowedTimeFormatted"):
        lines.append(f"Next allowed: {payload['nextAllowedTimeFormatted']}")
    return "\n".join(lines)


def format_trigger(payload: Dict[str, Any]) -> str:
    if payload["kind"] != "all":
        return f"Triggered {payload['kind']}: {payload['result']}"
    lines = ["Triggered all tasks:"]
    for kind, outcome in payload["result"].items():
        lines.append(f"  {kind}: {'ok' if outcome['ok'] else 'FAILED - ' + outcome['error']}")
    return "\n".join(lines)


# ── Handlers ──

def admin_ids() -> Optional[Set[int]]:
    raw = os.environ.get("TELEGRAM_ADMIN_IDS", "").strip()
    if not raw:
        return None
    return {int(part) for part in raw.split(",") if part.strip()}


def _control(context: ContextTypes.DEFAULT_TYPE) -> ControlPlane:
    return context.application.bot_data[CONTROL_KEY]


async def _reply(update: Update, text: str) -> None:
    # Telegram has a 4096 char limit per message
    for i in range(0, len(text), MAX_MESSAGE):
        await update.message.reply_text(text[i:i + MAX_MESSAGE])


def _authorized(update: Update) -> bool:
    allowed = admin_ids()
    return allowed is None or update.effective_chat.id in allowed


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _authorized(update):
        return
    await _reply(update, format_scheduler(_control(context).scheduler_status()))


async def breakers_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _authorized(update):
        return
    await _reply(update, format_breakers(_control(context).circuit_breakers()))


async def reset_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /reset <name|all>."""
    if not _authorized(update):
        return
    if not context.args:
        await _reply(update, "Usage: /reset <name|all>")
        return
    try:
        result = _control(context).reset_circuit_breaker(context.args[0])
    except AutopilotError as e:
        await _reply(update, str(e))
        return
    await _reply(update, result["message"])


async def trigger_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle /trigger [kind|all]."""
    if not _authorized(update):
        return
    kind = context.args[0] if context.args else "all"
    control = _control(context)
    try:
        if kind == "all":
            result = await control.trigger_all()
        else:
            result = await control.trigger(kind)
    except Exception as e:
        logger.error("Manual trigger of %s failed: %s", kind, e)
        await _reply(update, f"Trigger {kind} failed: {e}")
        return
    await _reply(update, format_trigger(result))


async def start_scheduler_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _authorized(update):
        return
    await _reply(update, _control(context).start_scheduler()["message"])


async def stop_scheduler_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _authorized(update):
        return
    await _reply(update, _control(context).stop_scheduler()["message"])


async def rate_limits_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _authorized(update):
        return
    await _reply(update, format_rate_limits(_control(context).rate_limits()))


async def scraping_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not _authorized(update):
        return
    await _reply(update, format_scraping(_control(context).scraping_status()))


async def _on_startup(application: Application) -> None:
    if as_bool(os.environ.get("AUTOPILOT_AUTOSTART", "false")):
        application.bot_data[CONTROL_KEY].start_scheduler()


async def _on_shutdown(application: Application) -> None:
    application.bot_data[CONTROL_KEY].stop_scheduler()


def build_application(token: str, control: ControlPlane) -> Application:
    app = (
        Application.builder()
        .token(token)
        .post_init(_on_startup)
        .post_shutdown(_on_shutdown)
        .build()
    )
    app.bot_data[CONTROL_KEY] = control

    app.add_handler(CommandHandler("status", status_command))
    app.add_handler(CommandHandler("breakers", breakers_command))
    app.add_handler(CommandHandler("reset", reset_command))
    app.add_handler(CommandHandler("trigger", trigger_command))
    app.add_handler(CommandHandler("start_scheduler", start_scheduler_command))
    app.add_handler(CommandHandler("stop_scheduler", stop_scheduler_command))
    app.add_handler(CommandHandler("ratelimits", rate_limits_command))
    app.add_handler(CommandHandler("scraping", scraping_command))
    return app


def main():
    """Start the bot."""
    token = os.environ.get("TELEGRAM_BOT_TOKEN")
    if not token:
        logger.error("TELEGRAM_BOT_TOKEN not set")
        sys.exit(1)

    config = load_config(os.environ.get("AUTOPILOT_CONFIG", "config/autopilot.defaults.yml"))
    control = build_control_plane(config)

    logger.info("Starting autopilot operator bot...")
    app = build_application(token, control)
    logger.info("Bot is running. Polling for messages...")
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
