from typing import Dict

DEFAULT_LANG = "ar"

I18N: Dict[str, Dict[str, str]] = {
    "ar": {
        "help": (
            "مرحباً! أنا بوت التذكيرات.\n\n"
            "• /remind <الوقت> | <العنوان> — إنشاء تذكير، مثال: /remind غداً 9:00 | دفع الفواتير\n"
            "  أو بمدة: /remind 20m | شرب الماء\n"
            "  وللتكرار: /remind غداً 9:00 | دواء | daily  (أو weekly 2، monthly x3)\n"
            "• /list — التذكيرات النشطة.\n"
            "• /snooze <id> <دقائق> — تأجيل تذكير.\n"
            "• /cancel <id> — حذف تذكير.\n"
            "• /tz [Region/City] — عرض/تغيير المنطقة الزمنية.\n"
            "• /lang ar | en — اللغة.\n\n"
            "المنطقة الزمنية الحالية: {tz}. اللغة: {lang}."
        ),
        "remind_need": "حدد الوقت والعنوان. مثال: /remind غداً 9:00 | دفع الفواتير",
        "remind_unparsed": "لم أفهم الوقت. أمثلة: 'غداً 9:30'، '2025-12-31 23:00'، '20m'",
        "remind_past": "هذا الوقت مضى. حدد وقتاً في المستقبل.",
        "remind_invalid": "تذكير غير صالح: {reason}",
        "remind_ok": "حسناً، سأذكّرك في {when_local} ({tz}) — بعد {delta}.\nID: {rid}",
        "list_empty": "لا توجد تذكيرات نشطة.",
        "list_header": "التذكيرات النشطة ({tz}):",
        "cancel_need": "حدد المعرّف: /cancel <id>",
        "cancel_nan": "المعرّف يجب أن يكون رقماً: /cancel 123",
        "cancel_ok": "تم حذف التذكير {rid}.",
        "cancel_not_found": "لم يتم العثور على تذكير نشط بهذا المعرّف.",
        "snooze_need": "الصيغة: /snooze <id> <دقائق>",
        "snooze_ok": "تم التأجيل حتى {when_local} ({tz}). ID: {rid}",
        "tz_show": "المنطقة الزمنية الحالية: {tz}\nللتغيير: /tz Region/City (مثال: Asia/Damascus)",
        "tz_bad": "منطقة زمنية غير صحيحة. مثال: Asia/Riyadh",
        "tz_ok": "تم ضبط المنطقة الزمنية: {tz}",
        "lang_show": "اللغة الحالية: {lang}\nللتغيير: /lang ar | en",
        "lang_bad": "اللغات المدعومة: ar، en",
        "lang_ok": "تم ضبط اللغة: {lang}",
        "error": "حدث خطأ داخلي. حاول لاحقاً.",
        "banned": "حسابك موقوف.",
        "admin_only": "هذا الأمر للمشرفين فقط.",
        "ban_need": "الصيغة: /ban <user_id> أو /unban <user_id>",
        "ban_ok": "تم إيقاف المستخدم {user_id}.",
        "unban_ok": "تم رفع الإيقاف عن المستخدم {user_id}.",
        "stats": (
            "📊 الإحصائيات\n"
            "المرسلة: {total_executed} (نجاح {success_count}، فشل {failure_count}، تخطي {skipped_count})\n"
            "المؤقتات النشطة: {active_timer_count}\n"
            "التذكيرات: {total} (نشطة {active}، مكتملة {completed}، متأخرة {overdue}، متروكة {abandoned})\n"
            "آخر تنفيذ: {last_execution_time}"
        ),
        "notification_title": "تذكير",
        "notification_footer": "أُرسل في {time}",
        "priority_low": "أولوية منخفضة",
        "priority_normal": "أولوية عادية",
        "priority_high": "أولوية عالية",
        "priority_urgent": "عاجل",
        "btn_done": "✅ تم",
        "btn_snooze": "⏰ تأجيل",
        "btn_back": "↩️ رجوع",
        "snooze_10": "10 د",
        "snooze_30": "30 د",
        "snooze_60": "ساعة",
        "status_done": "✅ تم الإنجاز",
        "status_snoozed": "⏰ مؤجل حتى {when_local}",
        "status_missing": "هذا التذكير لم يعد متاحاً.",
        "unit_day": "ي",
        "unit_hour": "س",
        "unit_minute": "د",
        "unit_second": "ث",
    },
    "en": {
        "help": (
            "Hi! I am a reminder bot.\n\n"
            "• /remind <when> | <title> — create a reminder, e.g. /remind tomorrow 9:00 | Pay bills\n"
            "  or with a duration: /remind 20m | Drink water\n"
            "  repeating: /remind tomorrow 9:00 | Pills | daily  (or weekly 2, monthly x3)\n"
            "• /list — active reminders.\n"
            "• /snooze <id> <minutes> — postpone a reminder.\n"
            "• /cancel <id> — delete a reminder.\n"
            "• /tz [Region/City] — show/set timezone.\n"
            "• /lang ar | en — language.\n\n"
            "Current timezone: {tz}. Language: {lang}."
        ),
        "remind_need": "Give a time and a title. Example: /remind tomorrow 9:00 | Pay bills",
        "remind_unparsed": "Could not understand the time. Examples: 'tomorrow 9:30', '2025-12-31 23:00', '20m'",
        "remind_past": "That time has already passed. Pick a future moment.",
        "remind_invalid": "Invalid reminder: {reason}",
        "remind_ok": "OK, I will remind you at {when_local} ({tz}) — in {delta}.\nID: {rid}",
        "list_empty": "No active reminders.",
        "list_header": "Active reminders ({tz}):",
        "cancel_need": "Give an ID: /cancel <id>",
        "cancel_nan": "ID must be a number: /cancel 123",
        "cancel_ok": "Reminder {rid} deleted.",
        "cancel_not_found": "No active reminder with that ID.",
        "snooze_need": "Usage: /snooze <id> <minutes>",
        "snooze_ok": "Snoozed until {when_local} ({tz}). ID: {rid}",
        "tz_show": "Current timezone: {tz}\nSet: /tz Region/City (e.g. Europe/London)",
        "tz_bad": "Invalid timezone. Example: Europe/London",
        "tz_ok": "Timezone set: {tz}",
        "lang_show": "Current language: {lang}\nSet: /lang ar | en",
        "lang_bad": "Supported: ar, en",
        "lang_ok": "Language set: {lang}",
        "error": "An internal error occurred. Please try later.",
        "banned": "Your account is suspended.",
        "admin_only": "This command is for admins only.",
        "ban_need": "Usage: /ban <user_id> or /unban <user_id>",
        "ban_ok": "User {user_id} banned.",
        "unban_ok": "User {user_id} unbanned.",
        "stats": (
            "📊 Stats\n"
            "Executed: {total_executed} (ok {success_count}, failed {failure_count}, skipped {skipped_count})\n"
            "Armed timers: {active_timer_count}\n"
            "Reminders: {total} (active {active}, completed {completed}, overdue {overdue}, abandoned {abandoned})\n"
            "Last execution: {last_execution_time}"
        ),
        "notification_title": "Reminder",
        "notification_footer": "Sent at {time}",
        "priority_low": "Low priority",
        "priority_normal": "Normal priority",
        "priority_high": "High priority",
        "priority_urgent": "Urgent",
        "btn_done": "✅ Done",
        "btn_snooze": "⏰ Snooze",
        "btn_back": "↩️ Back",
        "snooze_10": "10 min",
        "snooze_30": "30 min",
        "snooze_60": "1 hour",
        "status_done": "✅ Done",
        "status_snoozed": "⏰ Snoozed until {when_local}",
        "status_missing": "This reminder is no longer available.",
        "unit_day": "d",
        "unit_hour": "h",
        "unit_minute": "m",
        "unit_second": "s",
    },
}


def t(user_lang: str, key: str, **kwargs):
    lang = (user_lang or DEFAULT_LANG).lower()
    bundle = I18N.get(lang) or I18N[DEFAULT_LANG]
    txt = bundle.get(key) or I18N[DEFAULT_LANG].get(key, key)
    try:
        return txt.format(**kwargs)
    except (KeyError, IndexError, ValueError):
        return txt
