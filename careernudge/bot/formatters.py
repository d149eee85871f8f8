"""Message text formatters."""

from html import escape
from typing import List

from careernudge.db.models import Nudge, UserNudgePreferences
from careernudge.engine.orchestrator import SingleRuleEvaluation
from careernudge.engine.rules import RULE_REGISTRY, RuleCategory, RuleType
from careernudge.utils.time_utils import from_utc

CATEGORY_EMOJI = {
    RuleCategory.URGENT: "🚨",
    RuleCategory.HELPFUL: "💡",
    RuleCategory.MAINTENANCE: "🛠",
    RuleCategory.ENGAGEMENT: "🎯",
}


def _rule_title(rule_type: str) -> str:
    try:
        return RULE_REGISTRY[RuleType(rule_type)].name
    except ValueError:
        return rule_type


def _rule_emoji(rule_type: str) -> str:
    try:
        return CATEGORY_EMOJI[RULE_REGISTRY[RuleType(rule_type)].category]
    except ValueError:
        return "🔔"


def format_nudge(nudge: Nudge, resurfaced: bool = False) -> str:
    """Format a nudge card."""
    emoji = _rule_emoji(nudge.rule_type)
    lines = [f"{emoji} <b>{escape(_rule_title(nudge.rule_type))}</b>"]

    if resurfaced:
        lines.append("<i>Back from snooze</i>")

    lines.append(f"\n{escape(nudge.reason)}")

    if nudge.suggested_action:
        lines.append(f"\n👉 {escape(nudge.suggested_action)}")

    if nudge.action_url:
        lines.append(f"🔗 {escape(nudge.action_url)}")

    return "\n".join(lines)


def format_nudge_list(nudges: List[Nudge]) -> str:
    """Format the list of pending nudges."""
    if not nudges:
        return "No pending nudges. Nice work! 🎉"

    lines = [f"<b>Your Nudges ({len(nudges)})</b>\n"]

    for nudge in nudges:
        lines.append(
            f"{_rule_emoji(nudge.rule_type)} <b>{escape(_rule_title(nudge.rule_type))}</b> "
            f"(ID: {nudge.id})\n   {escape(nudge.reason)}"
        )

    return "\n\n".join(lines)


def format_stats_message(stats: dict) -> str:
    """Format nudge statistics into a readable message."""
    today = stats["today"]
    week = stats["week"]
    totals = stats["all"]

    lines = ["<b>📊 Your Nudge Statistics</b>\n"]

    lines.append("<b>📅 Today</b>")
    lines.append(f"Nudges: {today['count']} of {today['limit']} ({today['remaining']} left)\n")

    lines.append("<b>🗓 This Week</b>")
    lines.append(f"Nudges: {week['count']}")
    lines.append(f"✓ Accepted: {week['accepted']}")
    lines.append(f"✗ Dismissed: {week['dismissed']}\n")

    lines.append("<b>📋 All Time</b>")
    lines.append(f"Total: {totals['total']}")
    lines.append(f"🔔 Pending: {totals['pending']}")
    lines.append(f"✓ Accepted: {totals['accepted']}")
    lines.append(f"⏸ Snoozed: {totals['snoozed']}")
    lines.append(f"✗ Dismissed: {totals['dismissed']}\n")

    lines.append(f"🎯 Acceptance rate: {stats['acceptance_rate']:.1f}%")

    return "\n".join(lines)


def format_settings(prefs: UserNudgePreferences) -> str:
    """Format a user's nudge preferences."""
    status = "on" if prefs.agent_enabled and prefs.proactive_enabled else "paused"
    channels = ", ".join(name for name, on in sorted(prefs.channels.items()) if on) or "none"
    playbooks_off = [name for name, on in sorted(prefs.playbooks.items()) if not on]

    lines = [
        "<b>Your Nudge Settings</b>\n",
        f"🔔 Nudges: {status}",
        f"🌍 Timezone: <code>{escape(prefs.timezone)}</code>",
        f"🌙 Quiet Hours: {prefs.quiet_hours_start:02d}:00 - {prefs.quiet_hours_end:02d}:00",
        f"📈 Daily limit: {prefs.daily_limit}",
        f"📬 Channels: {channels}",
    ]

    if playbooks_off:
        lines.append(f"🚫 Playbooks off: {', '.join(playbooks_off)}")

    lines.append(
        "\n<b>Commands to change:</b>\n"
        "• /timezone <code>America/Toronto</code>\n"
        "• /quiet <code>22 8</code>\n"
        "• /limit <code>3</code>\n"
        "• /pause or /resume"
    )

    return "\n".join(lines)


def format_rule_diagnostic(diagnostic: SingleRuleEvaluation, timezone: str) -> str:
    """Format the /why output for one rule."""
    rule = diagnostic.rule
    lines = [f"<b>{escape(rule.name)}</b> (<code>{rule.rule_type.value}</code>)\n"]

    evaluation = diagnostic.evaluation
    if evaluation is None:
        lines.append("⚠️ This rule failed to evaluate.")
    elif evaluation.should_trigger:
        lines.append(f"✓ Would trigger (score {evaluation.score:g})")
        lines.append(escape(evaluation.reason))
    else:
        lines.append("✗ Would not trigger")
        lines.append(escape(evaluation.reason))

    if diagnostic.on_cooldown and diagnostic.cooldown_until:
        until_local = from_utc(diagnostic.cooldown_until, timezone)
        lines.append(f"\n⏸ On cooldown until {until_local.strftime('%b %d at %I:%M %p')}")

    return "\n".join(lines)


def format_welcome_message() -> str:
    """Format the welcome message for /start."""
    return """
<b>Welcome to CareerNudge!</b> 🧭

I keep an eye on your job search and send a few timely nudges: interview prep, stale applications, resume fixes and more.

<b>Quick Start:</b>
• /nudges - See your pending nudges
• /settings - Quiet hours, timezone and daily limit
• /help - Full command list

I'll never send more than your daily limit, and I stay quiet at night.
""".strip()


def format_help_message() -> str:
    """Format the help message."""
    rule_names = "\n".join(f"• <code>{rule_type.value}</code>" for rule_type in RuleType)

    return f"""
<b>CareerNudge Commands 🧭</b>

<b>Nudges:</b>
/nudges - Pending nudges with action buttons
/stats - Your nudge statistics
/why &lt;rule&gt; - Check a single rule right now

<b>Settings:</b>
/settings - View all settings
/timezone &lt;tz&gt; - Set timezone (e.g., America/Toronto)
/quiet &lt;start&gt; &lt;end&gt; - Quiet hours as hours of the day (e.g., 22 8)
/limit &lt;n&gt; - Maximum nudges per day
/pause - Stop proactive nudges
/resume - Start them again

<b>Rules:</b>
{rule_names}
""".strip()
