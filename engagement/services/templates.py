from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

_SCALE = (
    "1 - Didn't notice it\n"
    "2 - Noticed but didn't change my plans\n"
    "3 - Had to push through some things\n"
    "4 - Had to skip or modify something\n"
    "5 - Couldn't function"
)
_SHORT_SCALE = (
    "1 - Didn't notice it\n"
    "2 - Noticed but no impact\n"
    "3 - Had to push through\n"
    "4 - Had to skip/modify plans\n"
    "5 - Couldn't function"
)

TEMPLATES: dict[str, str] = {
    # onboarding
    "O-1-PCP": (
        "Hi {firstName}, this is the Headache Vault. {pcpName}'s office set up a 30-day headache "
        "tracking program for you.\n\nIt's one quick text per day, takes about 10 seconds.\n\n"
        "Reply START to begin, or STOP at any time to opt out."
    ),
    "O-1-SELF": (
        "Welcome to the Headache Vault! You're starting a 30-day headache tracking program. One text per "
        "day, about 10 seconds.\n\nAt the end, you'll get a report you can bring to any doctor.\n\n"
        "Reply START to begin, or STOP at any time."
    ),
    "O-2": (
        "Great! What time works best for a daily check-in? Most people pick morning or evening.\n\n"
        'Reply with a time like "8am" or "9pm"'
    ),
    "O-3-WITH-APPT": (
        "Got it, you'll hear from us daily at {time}.\n\nYour next appointment is {appointmentDate}. "
        "We'll have your report ready before then.\n\nYour first check-in comes tomorrow at {time}."
    ),
    "O-3-ASK-APPT": (
        "Got it, you'll hear from us daily at {time}.\n\nQuick question: do you have a doctor's appointment "
        'coming up? If so, reply with the date (like "March 15"). If not, just reply NO.'
    ),
    "O-3-CONFIRMED": "Got it, you'll hear from us daily at {time}.\n\nYour first check-in comes tomorrow at {time}.",
    "O-4-ASK": (
        "One more thing that'll make your report more useful:\n\nHave you ever taken a daily prevention "
        "medication for headaches? (Not Excedrin or Tylenol. Things like topiramate, propranolol, "
        "amitriptyline, or a CGRP med.)\n\nReply YES, NO, or NOT SURE."
    ),
    "O-4-LIST": (
        "Which ones have you tried? You can list them or describe them, brand or generic names both work.\n\n"
        'Example: "topiramate and propranolol" or "the one that made me foggy and a beta blocker"'
    ),
    "O-4-DONE-NONE": "No problem, we can always add that later. You're all set! Your daily check-ins are running.",
    "O-4-DONE-LIST": (
        "Got it, thanks. We've recorded that. This will help make your report more useful for your doctor. "
        "Your daily check-ins are running!"
    ),
    # daily check-in
    "D-1": "How's your head today?\n\n" + _SCALE,
    "D-ACK-1": "Got it, thanks. See you tomorrow.",
    "D-ACK-2": "Logged. Thanks for checking in.",
    "D-ACK-3": "Recorded. That's one more day of data for your report.",
    "D-ACK-4": "Thanks for sharing that. Every day of tracking matters.",
    "D-ACK-5": "Got it. Your consistency is building a really clear picture.",
    "D-ACK-6": "Noted. This kind of daily tracking is exactly what doctors need to see.",
    "D-RE3": (
        "Hey {firstName}, haven't heard from you in a few days. No pressure, just checking in.\n\n"
        "Reply with today's level (1-5) whenever you're ready, or reply PAUSE to take a break."
    ),
    "D-RE5": (
        "Hi {firstName}, it's been about 5 days. We'll pause your daily check-ins for now.\n\n"
        "Reply YES anytime to pick back up where you left off. Your data is saved."
    ),
    # weekly context questions
    "W-1": (
        "Quick weekly question: How many days this past week did you take something for a headache? "
        "(Tylenol, Excedrin, a triptan, anything.)\n\nReply with a number (0-7)."
    ),
    "W-2": (
        "Weekly check: This past week, how much did headaches affect your activities?\n\n"
        "1 - Not at all\n2 - Mild, adjusted a few things\n3 - Moderate, missed some activities\n"
        "4 - Severe, missed most of what I planned"
    ),
    "W-3": (
        "Last weekly question: Did you notice any triggers this week? (Stress, weather, sleep, food, "
        "hormones, etc.)\n\nReply with what you noticed, or NO if nothing stood out."
    ),
    "W-ACK": "Got it, thanks. Back to your regular check-ins tomorrow.",
    # insights
    "I-5": (
        "5 days in! Here's what we're seeing so far: {headacheDays} out of {totalDays} days with some "
        "headache impact.\n\nStill early. Patterns usually emerge around day 14."
    ),
    "I-10": (
        "10-day check: Your average daily level is {avgLevel}. You've had {headacheFreeDays} headache-free "
        "days out of {totalDays}.\n\nYou're building something most doctors never get to see: a real "
        "picture of your pattern."
    ),
    "I-14": (
        "Two weeks of data! {headacheDays} days with headache impact out of {totalDays} tracked.\n\n"
        "Your most common level: {mostCommonLevel}. Halfway there. The full 30 days makes the strongest "
        "case for your doctor."
    ),
    "I-21": (
        "3 weeks done. {headacheDays} headache days out of {totalDays} so far.\n\n"
        "You're in the home stretch. 9 more days to complete the picture."
    ),
    "I-30": (
        "{firstName}, you did it, 30 days of tracking!\n\nYour Visit Ready Report is here: {reportUrl}\n\n"
        "This has everything your doctor needs to see your pattern and make a plan. Bring it to your next "
        "appointment."
    ),
    # end of sprint
    "T-1": (
        "{firstName}, now that your 30-day sprint is complete, what would you like to do?\n\n"
        "1 - Weekly check-ins (less frequent)\n2 - Track a new treatment (restart daily)\n3 - Pause for now\n\n"
        "Your report and data are saved regardless."
    ),
    "T-1-WEEKLY": (
        "Weekly check-ins are coming soon! For now, your report is saved and your data is available anytime. "
        "We'll reach out when weekly mode launches.\n\n"
        "Reply START anytime to do another 30-day sprint."
    ),
    "T-1-TREATMENT": (
        "Treatment tracking starts now. Your baseline report is saved as the comparison. Your next "
        "check-in comes at {time}."
    ),
    "T-1-DORMANT": (
        "No problem. Your report and data are saved. Reply START anytime if you want to do another tracking "
        "sprint.\n\nThanks for tracking with us!"
    ),
    # system
    "SYS-STOP": "You've been unsubscribed from Headache Vault messages.{reportSuffix}\n\nText START anytime to re-subscribe.",
    "SYS-HELP": (
        "Headache Vault tracking system.\n\nReply with 1-5 for daily check-in.\nReply STOP to unsubscribe.\n"
        "Reply TIME to change your check-in time.\nReply REPORT to get your latest report link.\n\n"
        "Questions? Email support@headachevault.com"
    ),
    "SYS-TIME-ASK": 'What time would you like your daily check-in? Reply with a time like "8am" or "9pm"',
    "SYS-TIME-CONFIRM": "Got it, your check-in time is now {time}. The change starts tomorrow.",
    "SYS-REPORT": "Your latest report: {reportUrl}",
    "SYS-REPORT-PARTIAL": (
        "Your latest report: {reportUrl}\n\nYour report is {completionPct}% complete. Keep tracking for the "
        "full 30-day picture."
    ),
    "SYS-REPORT-NONE": "You don't have a report yet. Keep tracking and you'll get one at day 30!",
    "SYS-PAUSE": (
        "Got it, your check-ins are paused. Reply YES or any number (1-5) whenever you're ready to resume. "
        "Your data is saved."
    ),
    "SYS-PAUSED-INFO": "You're currently paused. Reply YES or a number (1-5) to resume tracking, or STOP to unsubscribe.",
    "SYS-RESUME": "Welcome back! We'll pick up where you left off. Your next check-in will be at {time}.",
    "SYS-REACTIVATE": "Welcome back! A new 30-day tracking sprint starts now. Your first check-in comes tomorrow at {time}.",
    "SYS-DORMANT-INFO": "Hi! You're not currently tracking. Reply START to begin a new 30-day sprint, or HELP for options.",
    "SYS-UNSUBSCRIBED": (
        "You're currently unsubscribed. Visit headachevault.com/track to re-enroll, or reply HELP for more info."
    ),
    # errors and clarification
    "ERR-DAILY": "I didn't catch that. Quick reminder, reply with:\n\n" + _SHORT_SCALE,
    "ERR-ONBOARDING": "Hmm, I'm not sure what you mean. Could you try again? Or reply HELP for options.",
    "ERR-TIME": "I didn't catch a time from that. Try replying with something like \"8am\" or \"9pm\".",
    "ERR-DATE": (
        "I didn't catch a date from that. Reply with a date like \"March 15\" or \"3/15\", or reply NO if you "
        "don't have one."
    ),
    "ERR-UNKNOWN-NUMBER": (
        "Hi! This is the Headache Vault. We don't have your number on file. Visit headachevault.com/track to "
        "sign up, or reply STOP to not hear from us again."
    ),
    "ERR-GENERIC": "Something went wrong. Reply HELP for options.",
    "CLARIFY-LEVEL": (
        "Thanks, just want to make sure I got that right. Did you mean Level {parsedLevel}?\n\n"
        + _SHORT_SCALE
        + "\n\nReply with a number."
    ),
}

ACK_TEMPLATES: tuple[str, ...] = ("D-ACK-1", "D-ACK-2", "D-ACK-3", "D-ACK-4", "D-ACK-5", "D-ACK-6")

INSIGHT_TEMPLATES: dict[int, str] = {5: "I-5", 10: "I-10", 14: "I-14", 21: "I-21", 30: "I-30"}


def next_ack(last_template: str | None) -> str:
    """Rotate through the acknowledgment variants, never repeating the previous one."""
    if last_template not in ACK_TEMPLATES:
        return ACK_TEMPLATES[0]
    return ACK_TEMPLATES[(ACK_TEMPLATES.index(last_template) + 1) % len(ACK_TEMPLATES)]


def render(template_id: str, **data: Any) -> str:
    template = TEMPLATES.get(template_id)
    if template is None:
        logger.error("unknown template template_id=%s", template_id)
        return TEMPLATES["ERR-GENERIC"]
    try:
        return template.format(**data)
    except (KeyError, IndexError) as exc:
        logger.error("template render failed template_id=%s missing=%s", template_id, exc)
        return TEMPLATES["ERR-GENERIC"]
