"""
FAB Bank bot — balance check with OTP, card services, mini statement and
live-agent handoff.

Main flows:
    MAIN_MENU ─check_balance─► CHECK_BALANCE ─phone─► VERIFY_OTP ─otp─► SHOW_BALANCE
    MAIN_MENU ─card_services─► GET_PHONE_FOR_CARDS ─phone─► CARD_ACTIONS_MENU
    CARD_ACTIONS_MENU ─block_card─► BLOCK_CARD ─card id─► CONFIRM_BLOCK_CARD ─reason─► MAIN_MENU
    CARD_ACTIONS_MENU ─unblock_card─► UNBLOCK_CARD ─card id─► CONFIRM_UNBLOCK_CARD ─confirm─► MAIN_MENU
    CARD_ACTIONS_MENU ─report_lost_card─► REPORT_LOST_CARD ─card id─► CONFIRM_REPORT_LOST ─confirm─► MAIN_MENU
    CARD_ACTIONS_MENU ─view_card_limits─► VIEW_CARD_LIMITS ─card id─► MAIN_MENU
    any ─live_chat─► LIVE_CHAT_ACTIVE (bridge)

Invalid input re-prompts without leaving the current state.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog

from backend.banking import BankingService
from bots.base import BotScript
from config.settings import TenantConfig
from core.dialog import Dialog, TurnContext
from core.intents import IntentMatcher, IntentRule
from core.live_chat import BridgeMessages
from models.schemas import (
    ChoiceOption, DialogEvent, DialogResponse, LifecycleType, OutboundMessage,
)
from utils.validators import format_phone_input, is_valid_otp, is_valid_phone, sanitize_input

logger = structlog.get_logger()

MAIN_MENU = "MAIN_MENU"
CHECK_BALANCE = "CHECK_BALANCE"
VERIFY_OTP = "VERIFY_OTP"
SHOW_BALANCE = "SHOW_BALANCE"
GET_PHONE_FOR_CARDS = "GET_PHONE_FOR_CARDS"
CARD_ACTIONS_MENU = "CARD_ACTIONS_MENU"
BLOCK_CARD = "BLOCK_CARD"
CONFIRM_BLOCK_CARD = "CONFIRM_BLOCK_CARD"
UNBLOCK_CARD = "UNBLOCK_CARD"
CONFIRM_UNBLOCK_CARD = "CONFIRM_UNBLOCK_CARD"
REPORT_LOST_CARD = "REPORT_LOST_CARD"
CONFIRM_REPORT_LOST = "CONFIRM_REPORT_LOST"
VIEW_CARD_LIMITS = "VIEW_CARD_LIMITS"
LIVE_CHAT_ACTIVE = "LIVE_CHAT_ACTIVE"
SESSION_CLOSED = "SESSION_CLOSED"

STATES = [
    MAIN_MENU, CHECK_BALANCE, VERIFY_OTP, SHOW_BALANCE,
    GET_PHONE_FOR_CARDS, CARD_ACTIONS_MENU,
    BLOCK_CARD, CONFIRM_BLOCK_CARD, UNBLOCK_CARD, CONFIRM_UNBLOCK_CARD,
    REPORT_LOST_CARD, CONFIRM_REPORT_LOST, VIEW_CARD_LIMITS,
    LIVE_CHAT_ACTIVE, SESSION_CLOSED,
]

# Order matters: first match wins
INTENT_RULES = [
    IntentRule(intent="balance", keywords=["balance", "check"]),
    IntentRule(intent="cards", keywords=["card", "service"]),
    IntentRule(intent="agent", keywords=["agent", "live chat", "human"], whole_word=True),
    IntentRule(intent="end", keywords=["end", "close", "exit"]),
]

INVALID_PHONE = "Invalid phone format. Please use: +919876543210 or 9876543210"
INVALID_OTP = "Invalid OTP format. Please enter 6 digits."
INVALID_CARD_ID = "Invalid card ID. Please try again."
SESSION_ERROR = "Session error. Please start again."
GOODBYE = "Thank you for using FAB Bank! Have a great day! 👋"
SESSION_ENDED = "Session has ended. Please follow the bot again to start a new session."


# ──────────────────────────────────────────────────────────────
#  Message builders
# ──────────────────────────────────────────────────────────────

def main_menu(text: str = "Please select an option") -> OutboundMessage:
    return OutboundMessage.choice_message(text, [
        ChoiceOption(label="Check Balance", action="check_balance", display_text="Check Balance"),
        ChoiceOption(label="Card Services", action="card_services", display_text="Card Services"),
        ChoiceOption(label="Live Chat", action="live_chat", display_text="Live Chat"),
        ChoiceOption(label="End Session", action="end_session", display_text="End Session"),
    ], alt_text="Main Menu")


def back_to_menu_button(text: str = "What next?") -> OutboundMessage:
    return OutboundMessage.choice_message(text, [
        ChoiceOption(label="Back to Menu", action="back_to_menu"),
    ], alt_text="Next Action")


def balance_options() -> OutboundMessage:
    return OutboundMessage.choice_message("Select an option:", [
        ChoiceOption(label="View Mini Statement", action="view_mini_statement"),
        ChoiceOption(label="Back to Menu", action="back_to_menu"),
    ], alt_text="Options")


def card_actions() -> OutboundMessage:
    return OutboundMessage.choice_message("Select action:", [
        ChoiceOption(label="🔒 Block Card", action="block_card"),
        ChoiceOption(label="🔓 Unblock Card", action="unblock_card"),
        ChoiceOption(label="⚠️ Report Lost", action="report_lost_card"),
        ChoiceOption(label="📊 View Limits", action="view_card_limits"),
    ], alt_text="Card Actions")


def confirm_buttons(text: str, label: str, action: str, card_id: str) -> OutboundMessage:
    return OutboundMessage.choice_message(text, [
        ChoiceOption(label=label, action=action, params={"cardId": card_id}),
        ChoiceOption(label="❌ Cancel", action="back_to_menu"),
    ], alt_text="Confirm")


def _money(value: Any) -> str:
    try:
        return f"{float(value):.2f}"
    except (TypeError, ValueError):
        return str(value)


def format_transactions(transactions: Any, limit: int = 5) -> str:
    if not isinstance(transactions, list) or not transactions:
        return "No recent transactions."
    lines = []
    for idx, txn in enumerate(transactions[:limit], start=1):
        raw_date = str(txn.get("date", ""))
        try:
            date = datetime.fromisoformat(raw_date.replace("Z", "+00:00")).strftime("%d/%m/%Y")
        except ValueError:
            date = raw_date
        amount = abs(float(txn.get("amount", 0) or 0))
        sign = "-" if str(txn.get("type", "")).upper() == "DEBIT" else "+"
        lines.append(f"{idx}. {date}\n   {txn.get('description', '')}\n   {sign}${amount:.2f}")
    return "\n\n".join(lines)


def bridge_messages() -> BridgeMessages:
    return BridgeMessages(
        connected=(
            "💬 Please wait while we connect you with an agent.\n\n"
            "A FAB Bank team member will assist you shortly."
        ),
        connect_failed=(
            "💬 Connecting you with an agent...\n\n"
            "You are now in live chat mode. Type your message to connect with a "
            "FAB Bank representative."
        ),
        ended="Your live chat session has ended. Thank you for connecting with us! 👋",
        closed=(
            "Thank you for using FAB Bank. Your session has ended. "
            "Please follow the bot again to start a new conversation."
        ),
        resume=[main_menu("Choose an option:")],
    )


# ──────────────────────────────────────────────────────────────
#  Dialog
# ──────────────────────────────────────────────────────────────

def build_dialog(banking: BankingService, bot_name: str = "FAB Bank",
                 welcome_image: str = "") -> Dialog:
    dialog = Dialog(
        name="fabbank",
        states=STATES,
        start_state=MAIN_MENU,
        live_chat_state=LIVE_CHAT_ACTIVE,
        closed_state=SESSION_CLOSED,
        intents=IntentMatcher(INTENT_RULES),
    )

    # ── Lifecycle ─────────────────────────────────────────

    @dialog.lifecycle(LifecycleType.FOLLOW)
    @dialog.lifecycle(LifecycleType.START)
    def welcome(ctx: TurnContext, event: DialogEvent, attributes: dict) -> DialogResponse:
        messages = []
        if welcome_image:
            messages.append(OutboundMessage.image_message(welcome_image))
        messages.append(OutboundMessage.text_message(
            f"Welcome to {bot_name}! 🏦\nI'm your banking assistant. How can I assist you today?"
        ))
        messages.append(main_menu())
        return DialogResponse(messages=messages, next_state=MAIN_MENU, clear_attributes=True)

    # ── Main menu ─────────────────────────────────────────

    @dialog.state(MAIN_MENU, classify_text=True)
    def show_menu(ctx, event, attributes):
        return DialogResponse(messages=[
            OutboundMessage.text_message("👇 Please select an option:"),
            main_menu("What would you like to do?"),
        ])

    @dialog.action("check_balance")
    @dialog.intent("balance")
    def start_balance(ctx, event, attributes):
        return DialogResponse.say(
            "💳 Starting Balance Check...\n\n"
            "Please enter your registered phone number (e.g., 9876543210 or +919876543210)",
            next_state=CHECK_BALANCE,
        )

    @dialog.action("card_services")
    @dialog.intent("cards")
    def start_cards(ctx, event, attributes):
        return DialogResponse.say(
            "💰 Starting Card Services...\n\nPlease enter your registered phone number to view your cards",
            next_state=GET_PHONE_FOR_CARDS,
        )

    @dialog.intent("agent")
    def agent_hint(ctx, event, attributes):
        return DialogResponse(messages=[
            OutboundMessage.text_message("To talk to one of our agents, tap Live Chat below."),
            main_menu(),
        ])

    @dialog.intent("end")
    def end_by_text(ctx, event, attributes):
        return DialogResponse.say(GOODBYE, next_state=SESSION_CLOSED)

    @dialog.action("back_to_menu")
    @dialog.action("end_live_chat")
    def back_to_menu(ctx, event, attributes):
        return DialogResponse(
            messages=[OutboundMessage.text_message("✅ Back to Main Menu"), main_menu()],
            next_state=MAIN_MENU,
        )

    @dialog.action("end_session")
    def end_session(ctx, event, attributes):
        return DialogResponse.say(
            f"✅ You selected: End Session\n\n{GOODBYE}",
            end_session=True,
        )

    @dialog.action("live_chat")
    def live_chat_unavailable(ctx, event, attributes):
        # Only reached when the tenant has no live-chat bridge
        return DialogResponse(
            messages=[
                OutboundMessage.text_message("Live chat is not available right now. Please try again later."),
                main_menu(),
            ],
            next_state=MAIN_MENU,
        )

    @dialog.state(LIVE_CHAT_ACTIVE)
    def live_chat_stale(ctx, event, attributes):
        return DialogResponse(
            messages=[OutboundMessage.text_message("Your live chat has ended."), main_menu()],
            next_state=MAIN_MENU,
        )

    @dialog.state(SESSION_CLOSED)
    def closed(ctx, event, attributes):
        return DialogResponse.say(SESSION_ENDED)

    # ── Balance ───────────────────────────────────────────

    @dialog.state(CHECK_BALANCE)
    async def enter_phone_for_balance(ctx, event, attributes):
        phone = format_phone_input(event.text)
        if not is_valid_phone(phone):
            return DialogResponse.say(INVALID_PHONE)

        result = await banking.send_otp(phone)
        if not result.success:
            return DialogResponse.say(f"Failed to send OTP: {result.message}")

        minutes = (result.data or {}).get("expiresInMinutes") or 5
        return DialogResponse.say(
            f"✅ OTP sent successfully!\nValid for {minutes} minutes.\n\nPlease enter the 6-digit OTP:",
            next_state=VERIFY_OTP,
            attributes={"phone": phone},
        )

    @dialog.state(VERIFY_OTP)
    async def enter_otp(ctx, event, attributes):
        otp = event.text.strip()
        if not is_valid_otp(otp):
            return DialogResponse.say(INVALID_OTP)

        phone = attributes.get("phone")
        if not phone:
            return DialogResponse.say(SESSION_ERROR, next_state=MAIN_MENU)

        verified = await banking.verify_otp(phone, otp)
        if not verified.success or not (verified.data or {}).get("verified"):
            return DialogResponse.say("❌ Invalid OTP. Please try again.")

        balance = await banking.get_balance(phone)
        if not balance.success:
            return DialogResponse.say("Failed to fetch balance. Please try again later.")

        data = balance.data or {}
        summary = (
            "💰 Account Balance\n\n"
            f"Name: {data.get('customerName', '')}\n"
            f"Account: {data.get('accountNumber', '')}\n"
            f"Type: {data.get('accountType', '')}\n"
            f"Balance: ${_money(data.get('balance'))} {data.get('currency', '')}\n\n"
            "What would you like to do next?"
        )
        return DialogResponse(
            messages=[OutboundMessage.text_message(summary), balance_options()],
            next_state=SHOW_BALANCE,
            attributes={
                "isAuthenticated": True,
                "customerName": data.get("customerName"),
                "accountNumber": data.get("accountNumber"),
                "accountType": data.get("accountType"),
                "balance": data.get("balance"),
                "currency": data.get("currency"),
            },
        )

    @dialog.state(SHOW_BALANCE)
    def balance_shown(ctx, event, attributes):
        return DialogResponse(messages=[balance_options()])

    @dialog.action("view_mini_statement")
    async def mini_statement(ctx, event, attributes):
        phone = attributes.get("phone")
        if not phone:
            return DialogResponse.say("Session expired. Please start again.", next_state=MAIN_MENU)

        result = await banking.get_mini_statement(phone, limit=5)
        if not result.success:
            return DialogResponse.say(f"Failed to fetch statement: {result.message}")

        transactions = (result.data or {}).get("transactions")
        text = (
            f"📊 Last 5 Transactions:\n\n{format_transactions(transactions)}\n\n"
            f"💰 Current Balance: ${_money(attributes.get('balance', 0))}"
        )
        return DialogResponse(messages=[OutboundMessage.text_message(text), back_to_menu_button()])

    # ── Cards ─────────────────────────────────────────────

    @dialog.state(GET_PHONE_FOR_CARDS)
    async def enter_phone_for_cards(ctx, event, attributes):
        phone = format_phone_input(event.text)
        if not is_valid_phone(phone):
            return DialogResponse.say(INVALID_PHONE)

        result = await banking.get_cards(phone)
        if not result.success:
            return DialogResponse.say(f"Failed to fetch cards: {result.message}")
        cards = result.data or []
        if not cards:
            return DialogResponse.say("No cards found for your account.")

        listing = "\n".join(
            f"{idx}. {card.get('cardType', 'Card')} - {card.get('cardNumber', '')} ({card.get('status', '')})"
            for idx, card in enumerate(cards, start=1)
        )
        return DialogResponse(
            messages=[
                OutboundMessage.text_message(f"Your Cards:\n{listing}\n\nWhat would you like to do?"),
                card_actions(),
            ],
            next_state=CARD_ACTIONS_MENU,
            attributes={"phone": phone, "cards": cards},
        )

    @dialog.state(CARD_ACTIONS_MENU)
    def card_menu(ctx, event, attributes):
        return DialogResponse(messages=[card_actions()])

    def _card_prompt(selected: str, prompt: str, next_state: str):
        def handler(ctx, event, attributes):
            return DialogResponse.say(f"✅ You selected: {selected}\n\n{prompt}", next_state=next_state)
        return handler

    dialog.register_action("block_card", _card_prompt("Block Card", "Enter the Card ID to block:", BLOCK_CARD))
    dialog.register_action("unblock_card", _card_prompt("Unblock Card", "Enter the Card ID to unblock:", UNBLOCK_CARD))
    dialog.register_action("report_lost_card", _card_prompt(
        "Report Lost Card", "Enter the Card ID of your lost card:", REPORT_LOST_CARD))
    dialog.register_action("view_card_limits", _card_prompt(
        "View Card Limits", "Enter the Card ID to view limits:", VIEW_CARD_LIMITS))

    @dialog.state(BLOCK_CARD)
    def enter_card_to_block(ctx, event, attributes):
        card_id = sanitize_input(event.text)
        if not card_id:
            return DialogResponse.say(INVALID_CARD_ID)
        return DialogResponse.say(
            "Reason for blocking (optional):",
            next_state=CONFIRM_BLOCK_CARD,
            attributes={"cardId": card_id},
        )

    @dialog.state(CONFIRM_BLOCK_CARD)
    async def confirm_block(ctx, event, attributes):
        phone, card_id = attributes.get("phone"), attributes.get("cardId")
        if not phone or not card_id:
            return DialogResponse.say(SESSION_ERROR, next_state=MAIN_MENU)

        reason = sanitize_input(event.text) or "User request"
        result = await banking.block_card(phone, card_id, reason)
        if not result.success:
            return DialogResponse.say(f"Failed to block card: {result.message}")
        return DialogResponse(
            messages=[
                OutboundMessage.text_message(f"✅ Card {card_id} blocked successfully!"),
                back_to_menu_button(),
            ],
            next_state=MAIN_MENU,
        )

    @dialog.state(UNBLOCK_CARD)
    def enter_card_to_unblock(ctx, event, attributes):
        card_id = sanitize_input(event.text)
        if not card_id:
            return DialogResponse.say(INVALID_CARD_ID)
        return DialogResponse(
            messages=[
                OutboundMessage.text_message(f"Are you sure you want to unblock card {card_id}?"),
                confirm_buttons("Confirm unblock?", "✅ Yes, Unblock", "confirm_unblock", card_id),
            ],
            next_state=CONFIRM_UNBLOCK_CARD,
            attributes={"cardId": card_id},
        )

    @dialog.state(CONFIRM_UNBLOCK_CARD)
    def unblock_pending(ctx, event, attributes):
        card_id = attributes.get("cardId", "")
        return DialogResponse(messages=[
            confirm_buttons("Confirm unblock?", "✅ Yes, Unblock", "confirm_unblock", card_id),
        ])

    @dialog.action("confirm_unblock")
    async def confirm_unblock(ctx, event, attributes):
        phone = attributes.get("phone")
        card_id = event.params.get("cardId") or attributes.get("cardId")
        if not phone or not card_id:
            return DialogResponse.say(SESSION_ERROR, next_state=MAIN_MENU)

        result = await banking.unblock_card(phone, card_id)
        if not result.success:
            return DialogResponse.say(f"Failed to unblock card: {result.message}")
        return DialogResponse(
            messages=[
                OutboundMessage.text_message(f"✅ Card {card_id} unblocked successfully!"),
                back_to_menu_button(),
            ],
            next_state=MAIN_MENU,
        )

    @dialog.state(REPORT_LOST_CARD)
    def enter_lost_card(ctx, event, attributes):
        card_id = sanitize_input(event.text)
        if not card_id:
            return DialogResponse.say(INVALID_CARD_ID)
        return DialogResponse(
            messages=[
                OutboundMessage.text_message(
                    f"⚠️ Report Lost Card\n\nCard ID: {card_id}\n\n"
                    "This will immediately block your card to prevent misuse."
                ),
                confirm_buttons("Confirm report lost?", "✅ Confirm", "confirm_report_lost", card_id),
            ],
            next_state=CONFIRM_REPORT_LOST,
            attributes={"cardId": card_id},
        )

    @dialog.state(CONFIRM_REPORT_LOST)
    def report_pending(ctx, event, attributes):
        card_id = attributes.get("cardId", "")
        return DialogResponse(messages=[
            confirm_buttons("Confirm report lost?", "✅ Confirm", "confirm_report_lost", card_id),
        ])

    @dialog.action("confirm_report_lost")
    async def confirm_report_lost(ctx, event, attributes):
        phone = attributes.get("phone")
        card_id = event.params.get("cardId") or attributes.get("cardId")
        if not phone or not card_id:
            return DialogResponse.say(SESSION_ERROR, next_state=MAIN_MENU)

        result = await banking.report_lost_card(phone, card_id)
        if not result.success:
            return DialogResponse.say(f"Failed to report card: {result.message}")
        return DialogResponse(
            messages=[
                OutboundMessage.text_message(
                    f"✅ Card {card_id} reported as lost!\n\n"
                    "Your card has been blocked immediately. "
                    "You will receive a replacement card within 5-7 business days."
                ),
                back_to_menu_button(),
            ],
            next_state=MAIN_MENU,
        )

    @dialog.state(VIEW_CARD_LIMITS)
    async def enter_card_for_limits(ctx, event, attributes):
        card_id = sanitize_input(event.text)
        if not card_id:
            return DialogResponse.say(INVALID_CARD_ID)

        result = await banking.get_card_limits(card_id)
        if not result.success:
            return DialogResponse.say(f"Failed to fetch limits: {result.message}")

        d = result.data or {}
        text = (
            "💳 Card Limits\n\n"
            f"Card: {d.get('cardNumber', card_id)}\nType: {d.get('cardType', '')}\n\n"
            f"Daily Limit: ${d.get('dailyLimit', '-')}\n"
            f"Monthly Limit: ${d.get('monthlyLimit', '-')}\n"
            f"Used This Month: ${d.get('usedThisMonth', '-')}\n"
            f"Remaining: ${d.get('remainingLimit', '-')}\n\n"
            f"ATM Limit: ${d.get('atmLimit', '-')}\n"
            f"POS Limit: ${d.get('posLimit', '-')}"
        )
        return DialogResponse(
            messages=[OutboundMessage.text_message(text), back_to_menu_button()],
            next_state=MAIN_MENU,
        )

    return dialog


def create_script(tenant: TenantConfig, banking: Optional[BankingService] = None) -> BotScript:
    """Factory entry point used by bots.factory."""
    owned = banking is None
    banking = banking or BankingService(tenant.backend)
    if owned and not banking.client.is_configured:
        logger.warning("banking_backend_not_configured", tenant_id=tenant.tenant_id)
    dialog = build_dialog(
        banking,
        bot_name=tenant.bot_name or "FAB Bank",
        welcome_image=tenant.welcome_image,
    )
    return BotScript(
        dialog=dialog,
        bridge_messages=bridge_messages(),
        resources=[banking] if owned else [],
    )
