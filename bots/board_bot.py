#!/usr/bin/env python3
"""
Foard Board Bot
───────────────
Drives a shared board from a Telegram chat.

Each chat is linked to one board (see `telegram:` in foard.yaml). A
Telegram user acts as the board user they signed in as with /login, or
else the one mapped to them in the config. Every command opens a short
board session, so the bot always works on the latest stored state.

Setup:
    export FOARD_BOT_TOKEN=your_token_here
    python board_bot.py --config ../config/foard.yaml

Commands:
    /board                          — Open tasks by column
    /add <category>                 — One title per following line
    /move <tag> <category> [pos]    — Move a task (pos is 1-based)
    /done <tag>                     — Archive a task
    /delete <tag>                   — Delete a task
    /archive                        — Recently completed tasks
    /login <name> <lucky number>    — Act as that board user
    /logout
    /help

Dependencies:
    pip install python-telegram-bot==20.* pyyaml
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from telegram import BotCommand, Update
from telegram.ext import Application, CommandHandler, ContextTypes
from telegram.helpers import escape_markdown

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from pkg.board.config import BoardConfig, ConfigError
from pkg.board.docstore import StoreError
from pkg.board.identity import IdentityProvider, NotAuthenticated
from pkg.board.members import AccessDenied, CollaborationGate
from pkg.board.ordering import OrderingError
from pkg.board.reconcile import BoardSync, PersistenceError
from pkg.board.schema import ValidationError
from pkg.board.store import store_from_config
from pkg.board.telegram_bridge import TelegramBoardBridge

logger = logging.getLogger(__name__)

COMMANDS = {
    "board": "Show open tasks",
    "add": "Add tasks: /add <category>, one title per line",
    "move": "Move a task: /move <tag> <category> [position]",
    "done": "Archive a task: /done <tag>",
    "delete": "Delete a task: /delete <tag>",
    "archive": "Show recently completed tasks",
    "login": "Sign in: /login <name> <lucky number>",
    "logout": "Sign out",
    "help": "Show available commands",
}

# Errors reported back to the chat instead of crashing the handler
USER_ERRORS = (ValidationError, OrderingError, AccessDenied, NotAuthenticated, PersistenceError, StoreError)


def command_body(text: str) -> str:
    """Everything after the leading /command word, newlines kept."""
    text = (text or "").lstrip()
    if not text.startswith("/"):
        return text.strip()
    parts = text.split(maxsplit=1)
    return parts[1].strip() if len(parts) > 1 else ""


class BoardBot:
    """Telegram front end for shared boards."""

    def __init__(self, cfg: BoardConfig, store=None):
        self.cfg = cfg
        self.store = store if store is not None else store_from_config(cfg)
        self.gate = CollaborationGate(self.store, invite_ttl_hours=cfg.invite_ttl_hours)
        # Telegram user id → identity signed in with /login
        self.identities: Dict[str, IdentityProvider] = {}

    # ──────────────────────────────────────────
    # Auth + session helpers
    # ──────────────────────────────────────────

    async def board_user(self, update: Update) -> Optional[str]:
        """
        Board user id acting for the Telegram sender, or None.

        A /login identity wins over the config mapping; a login still in
        flight is waited for (up to identity_timeout).
        """
        key = str(update.effective_user.id)
        provider = self.identities.get(key)
        if provider is not None:
            return (await provider.ensure()).user_id
        return self.cfg.telegram_users.get(key)

    def chat_board(self, update: Update) -> Optional[str]:
        return self.cfg.telegram_chats.get(str(update.effective_chat.id))

    async def _reject_unauthorized(self, update: Update):
        user = update.effective_user
        logger.warning(
            f"Unauthorized access attempt: user_id={user.id}, "
            f"username={user.username}, name={user.full_name}"
        )
        await update.message.reply_text("⛔ Unauthorized. This incident has been logged.")

    def _session(self, board_id: str, user_id: str) -> BoardSync:
        return BoardSync(
            self.store,
            board_id,
            user_id=user_id,
            gate=self.gate,
            write_attempts=self.cfg.write_attempts,
            retry_delay=self.cfg.retry_delay,
            transaction_attempts=self.cfg.transaction_attempts,
        )

    async def _with_board(
        self,
        update: Update,
        action: Callable[[TelegramBoardBridge], Awaitable[str]],
    ):
        """Authorize, open a session on the chat's board and reply with `action`'s text."""
        try:
            user_id = await self.board_user(update)
        except NotAuthenticated as e:
            await update.message.reply_text(f"⚠️ {e}. Sign in with /login <name> <lucky number>.")
            return
        if user_id is None:
            await self._reject_unauthorized(update)
            return

        board_id = self.chat_board(update)
        if board_id is None:
            await update.message.reply_text("⚠️ This chat is not linked to a board.")
            return

        try:
            async with self._session(board_id, user_id) as sync:
                reply = await action(TelegramBoardBridge(sync))
        except USER_ERRORS as e:
            logger.info(f"Command from {user_id} on {board_id} failed: {e}")
            await update.message.reply_text(f"⚠️ {e}")
            return

        await update.message.reply_text(reply, parse_mode="Markdown")

    # ──────────────────────────────────────────
    # Command handlers
    # ──────────────────────────────────────────

    async def cmd_board(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        async def show(bridge):
            return bridge.board_summary()
        await self._with_board(update, show)

    async def cmd_add(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        body = command_body(update.message.text)

        async def add(bridge):
            created = await bridge.add_from_message(body)
            lines = [f"➕ Added {len(created)} task(s):"]
            lines += [f"`{t.tag}` {escape_markdown(t.title)}" for t in created]
            return "\n".join(lines)
        await self._with_board(update, add)

    async def cmd_move(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        args = list(context.args or [])
        if len(args) not in (2, 3):
            await update.message.reply_text("⚠️ Usage: /move <tag> <category> [position]")
            return

        async def move(bridge):
            task = await bridge.move_by_tag(*args)
            return f"↔️ {escape_markdown(task.title)} is now `{task.tag}`"
        await self._with_board(update, move)

    async def cmd_done(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if len(context.args or []) != 1:
            await update.message.reply_text("⚠️ Usage: /done <tag>")
            return

        async def done(bridge):
            task = await bridge.done_by_tag(context.args[0])
            return f"✅ Archived: {escape_markdown(task.title)}"
        await self._with_board(update, done)

    async def cmd_delete(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if len(context.args or []) != 1:
            await update.message.reply_text("⚠️ Usage: /delete <tag>")
            return

        async def remove(bridge):
            task = await bridge.delete_by_tag(context.args[0])
            return f"🗑 Deleted: {escape_markdown(task.title)}"
        await self._with_board(update, remove)

    async def cmd_archive(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        async def show(bridge):
            return bridge.archive_summary()
        await self._with_board(update, show)

    async def cmd_login(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        args = list(context.args or [])
        if len(args) < 2:
            await update.message.reply_text("⚠️ Usage: /login <name> <lucky number>")
            return

        key = str(update.effective_user.id)
        provider = self.identities.get(key)
        if provider is None:
            provider = IdentityProvider(self.store, timeout=self.cfg.identity_timeout)
            self.identities[key] = provider
        try:
            identity = await provider.login(" ".join(args[:-1]), args[-1])
        except (ValidationError, StoreError) as e:
            if provider.current is None:
                self.identities.pop(key, None)
            await update.message.reply_text(f"⚠️ {e}")
            return

        logger.info(f"Telegram user {key} signed in as {identity.user_id[:8]}")
        await update.message.reply_text(f"👋 Signed in as {identity.name}.")

    async def cmd_logout(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        provider = self.identities.pop(str(update.effective_user.id), None)
        if provider is None:
            await update.message.reply_text("You are not signed in.")
            return
        provider.logout()
        await update.message.reply_text("👋 Signed out.")

    async def handle_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        # Open to everyone: it is how new users find /login
        lines = ["*Foard — Commands*\n"]
        lines += [f"/{name} — {desc}" for name, desc in COMMANDS.items()]
        lines.append("\nCategories: Now, Day, Week, Month")
        await update.message.reply_text("\n".join(lines), parse_mode="Markdown")

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def register_handlers(self, app: Application):
        app.add_handler(CommandHandler("help", self.handle_help))
        app.add_handler(CommandHandler("start", self.handle_help))
        app.add_handler(CommandHandler("login", self.cmd_login))
        app.add_handler(CommandHandler("logout", self.cmd_logout))
        app.add_handler(CommandHandler("board", self.cmd_board))
        app.add_handler(CommandHandler("add", self.cmd_add))
        app.add_handler(CommandHandler("move", self.cmd_move))
        app.add_handler(CommandHandler("done", self.cmd_done))
        app.add_handler(CommandHandler("delete", self.cmd_delete))
        app.add_handler(CommandHandler("archive", self.cmd_archive))

    async def set_bot_commands(self, app: Application):
        """Set command suggestions in Telegram UI (autocomplete menu)."""
        await app.bot.set_my_commands(
            [BotCommand(name, desc[:256]) for name, desc in COMMANDS.items()]
        )

    def run(self):
        """Build Telegram Application, register handlers, and start polling."""
        app = Application.builder().token(self.cfg.bot_token()).build()
        self.register_handlers(app)

        async def post_init(application):
            await self.set_bot_commands(application)

        app.post_init = post_init
        logger.info(f"Starting board bot for {len(self.cfg.telegram_chats)} chat(s)…")
        app.run_polling(drop_pending_updates=True)


def main():
    parser = argparse.ArgumentParser(description="Foard Telegram bot")
    parser.add_argument("--config", help="Path to foard.yaml (overrides FOARD_CONFIG env var)")
    args = parser.parse_args()

    try:
        cfg = BoardConfig.load(args.config)
        cfg.bot_token()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [board_bot] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    BoardBot(cfg).run()


if __name__ == "__main__":
    main()
