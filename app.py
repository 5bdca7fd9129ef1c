# app.py — Secret Santa Bot (несколько подарков на участника)
# Python 3.11+ / Aiogram 3.7+

import os
import sys
import asyncio
import logging
import contextlib
from typing import Optional, List, Tuple, Dict

from aiogram import Bot, Dispatcher, F
from aiogram.enums import ParseMode
from aiogram.client.default import DefaultBotProperties
from aiogram.dispatcher.event.bases import SkipHandler
from aiogram.filters import CommandStart, StateFilter
from aiogram.fsm.state import State, StatesGroup
from aiogram.fsm.context import FSMContext
from aiogram.types import (
    Message, CallbackQuery,
    InlineKeyboardMarkup, ReplyKeyboardMarkup, KeyboardButton
)
from aiogram.utils.keyboard import InlineKeyboardBuilder
from aiogram.utils.text_decorations import html_decoration as hd

import assignments as core
import storage
from storage import Room

# ============================================================
# ENV
# ============================================================
BOT_TOKEN = os.environ.get("BOT_TOKEN", "")
if not BOT_TOKEN:
    raise RuntimeError("BOT_TOKEN is required")

WEBHOOK_URL = os.environ.get("WEBHOOK_URL")  # если задан — режим webhook, иначе polling
PORT = int(os.environ.get("PORT", "10000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

MESSAGE_LIMIT = 4000

logger = logging.getLogger(__name__)

# ============================================================
# Rendering
# ============================================================
def gifts_word(n: int) -> str:
    if n % 10 == 1 and n % 100 != 11:
        return "подарок"
    if 2 <= n % 10 <= 4 and not 12 <= n % 100 <= 14:
        return "подарка"
    return "подарков"

def render_targets(rows: List[Tuple[str, int]]) -> str:
    if not rows:
        return "Жеребьёвки ещё не было"
    lines = ["Ты даришь:"]
    lines += [f"{n}. <b>{hd.quote(name)}</b>" for name, n in rows]
    return "\n".join(lines)

def render_pairs(rows: List[Dict[str, object]]) -> str:
    if not rows:
        return "Пар пока нет"
    return "\n".join(
        f"{hd.quote(str(r['giverName']))} → {hd.quote(str(r['receiverName']))} (#{r['giftNumber']})"
        for r in rows
    )

def render_report(report: core.VerificationReport) -> str:
    k = report.gifts_per_participant
    lines = [
        f"Проверка комнаты <b>{hd.quote(report.group_name)}</b>",
        f"Участников: {report.total_participants}, по {k} {gifts_word(k)}",
        f"Пар: {report.total_assignments} из {report.expected_assignments}",
        "",
    ]
    for p in report.participants:
        mark = "✅" if p.gives_correct and p.receives_correct else "⚠️"
        given = ", ".join(f"{hd.quote(d.receiver)} (#{d.gift_number})" for d in p.assignments) or "никому"
        lines.append(f"{mark} <b>{hd.quote(p.name)}</b>: дарит {p.gives}, получает {p.receives}")
        lines.append(f"   → {given}")
    if report.has_self_assignments:
        lines.append("")
        lines.append("❌ Сам себе:")
        lines += [f"• {hd.quote(s.person)} (#{s.gift_number})" for s in report.self_assignments]
    lines.append("")
    if report.is_valid:
        lines.append("🎉 Всё сходится: каждый дарит и получает нужное число подарков, никто не дарит сам себе.")
    else:
        lines.append("⚠️ Есть проблемы:")
        lines += [f"• {hd.quote(issue)}" for issue in report.issues]
    return "\n".join(lines)

def split_message(text: str, limit: int = MESSAGE_LIMIT) -> List[str]:
    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        if current and len(current) + len(line) + 1 > limit:
            chunks.append(current)
            current = ""
        current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks

# ============================================================
# Bot / Keyboards
# ============================================================
bot = Bot(BOT_TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
dp = Dispatcher()

class Join(StatesGroup):
    name = State()

def kb_root(in_room: bool) -> ReplyKeyboardMarkup:
    if not in_room:
        return ReplyKeyboardMarkup(
            keyboard=[
                [KeyboardButton(text="➕ Создать комнату"), KeyboardButton(text="🔗 Подключиться")],
                [KeyboardButton(text="ℹ️ Правила")],
            ],
            resize_keyboard=True,
            one_time_keyboard=False,
            input_field_placeholder="Создай комнату или подключись по коду"
        )
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text="🏠 Меню"), KeyboardButton(text="ℹ️ Правила")],
            [KeyboardButton(text="📨 Получатели")],
            [KeyboardButton(text="🚪 Выйти из комнаты")],
        ],
        resize_keyboard=True,
        one_time_keyboard=False
    )

def main_kb(code: Optional[str], is_owner: bool) -> InlineKeyboardMarkup:
    b = InlineKeyboardBuilder()
    if code:
        b.button(text="👥 Участники", callback_data=f"room_participants:{code}")
        b.button(text="📨 Получатели", callback_data=f"me_target:{code}")
        if is_owner:
            b.button(text="🎁 Подарков на человека", callback_data=f"room_gifts:{code}")
            b.button(text="🎲 Жеребьёвка", callback_data=f"room_draw:{code}")
            b.button(text="🔍 Проверить", callback_data=f"room_verify:{code}")
            b.button(text="📋 Все пары", callback_data=f"room_pairs:{code}")
            b.button(text="♻️ Сбросить", callback_data=f"room_reset:{code}")
    b.button(text="🏠 В главное меню", callback_data="to_main")
    b.adjust(1)
    return b.as_markup()

def gifts_kb(code: Optional[str] = None) -> InlineKeyboardMarkup:
    # без кода — новая комната, с кодом — смена у существующей
    b = InlineKeyboardBuilder()
    for k in core.GIFTS_PER_PARTICIPANT_CHOICES:
        data = f"room_new:{k}" if code is None else f"room_setk:{code}:{k}"
        b.button(text=f"🎁 {k} {gifts_word(k)}", callback_data=data)
    b.button(text="↩️ Назад", callback_data=f"room_open:{code}" if code else "to_main")
    b.adjust(3, 1)
    return b.as_markup()

async def send_single(m: Message | CallbackQuery, text: str, kb: InlineKeyboardMarkup | ReplyKeyboardMarkup | None = None):
    if isinstance(m, CallbackQuery):
        sent = await m.message.answer(text, reply_markup=kb)
        with contextlib.suppress(Exception):
            await m.answer()
        return sent
    return await m.answer(text, reply_markup=kb)

async def send_long(m: Message | CallbackQuery, text: str, kb: InlineKeyboardMarkup | None = None):
    chunks = split_message(text)
    for chunk in chunks[:-1]:
        await send_single(m, chunk)
    await send_single(m, chunks[-1], kb)

async def show_main(m: Message | CallbackQuery):
    room = await storage.get_user_active_room(m.from_user.id)
    await send_single(m, "Главное меню", kb_root(bool(room)))

async def owner_room(cq: CallbackQuery) -> Optional[Room]:
    code = cq.data.split(":")[1]
    room = await storage.get_room(code)
    if not room:
        await cq.answer("Нет комнаты", show_alert=True)
        return None
    if room.owner_id != cq.from_user.id:
        await cq.answer("Только владелец", show_alert=True)
        return None
    return room

# ============================================================
# Handlers
# ============================================================
@dp.message(StateFilter("*"), F.text.in_({"🏠 Меню", "⬅️ Назад", "Отмена", "/menu"}))
async def any_to_menu(m: Message, state: FSMContext):
    await state.clear()
    await show_main(m)

@dp.callback_query(StateFilter("*"), F.data == "to_main")
async def cb_to_main(cq: CallbackQuery, state: FSMContext):
    await state.clear()
    await show_main(cq)

@dp.message(CommandStart())
async def on_cmd_start(m: Message, state: FSMContext):
    await state.clear()
    payload = m.text.split(maxsplit=1)[1] if len(m.text.split()) > 1 else ""

    # deep-link: комната
    if payload.startswith("room_"):
        await enter_room_menu(m, payload.removeprefix("room_"))
        return

    await show_main(m)

# Создать комнату
@dp.message(F.text == "➕ Создать комнату")
async def on_create_btn(m: Message):
    await m.answer("Сколько подарков дарит каждый участник?", reply_markup=gifts_kb())

@dp.callback_query(F.data.startswith("room_new:"))
async def cb_room_new(cq: CallbackQuery):
    k = int(cq.data.split(":", 1)[1])
    try:
        room = await storage.create_room(cq.from_user.id, gifts_per_participant=k)
    except (ValueError, storage.StorageError) as e:
        await cq.answer(str(e)[:200], show_alert=True)
        return
    await storage.join_room(room, cq.from_user.id, cq.from_user.full_name)
    me = await bot.get_me()
    link = f"https://t.me/{me.username}?start=room_{room.code}"
    await send_single(
        cq,
        f"Комната создана: <code>{room.code}</code>\n"
        f"Каждый дарит {k} {gifts_word(k)}\nПриглашение: {link}",
        kb_root(True)
    )
    await enter_room_menu(cq, room.code)

# Присоединиться
@dp.message(F.text == "🔗 Подключиться")
async def on_join_btn(m: Message, state: FSMContext):
    await state.update_data(wait_code=True)
    await m.answer("Введи код комнаты (например: ABC123)")

@dp.message(StateFilter(None), F.text.regexp(r"^[A-Za-z0-9]{4,10}$"))
async def join_code(m: Message, state: FSMContext):
    if not (await state.get_data()).get("wait_code"):
        raise SkipHandler()
    code = m.text.strip().upper()
    if not await storage.get_room(code):
        await m.answer("Комната не найдена")
        return
    await state.clear()
    await state.update_data(room_code=code)
    await state.set_state(Join.name)
    await m.answer("Как тебя звать для списка?")

@dp.message(Join.name)
async def join_name(m: Message, state: FSMContext):
    data = await state.get_data()
    code = data["room_code"]
    name = (m.text or "").strip()[:64]
    await state.clear()
    if not name:
        await m.answer("Сначала представься", reply_markup=kb_root(False))
        return
    room = await storage.get_room(code)
    if not room:
        await m.answer("Комната не найдена", reply_markup=kb_root(False))
        return
    try:
        await storage.join_room(room, m.from_user.id, name)
    except storage.StorageError as e:
        await m.answer(str(e), reply_markup=kb_root(False))
        return
    await m.answer("Записал 🎄", reply_markup=kb_root(True))
    await enter_room_menu(m, code)

# Открыть комнату / список участников
async def enter_room_menu(msg: Message | CallbackQuery, code: str):
    room = await storage.get_room(code)
    if not room:
        await send_single(msg, "Комната не найдена", kb_root(False))
        return
    part = await storage.get_member(room.id, msg.from_user.id)
    k = room.gifts_per_participant
    if not part:
        kb = InlineKeyboardBuilder()
        kb.button(text="✅ Присоединиться", callback_data=f"join:{code}")
        kb.button(text="↩️ Назад", callback_data="to_main")
        await send_single(
            msg,
            f"Комната <b>{hd.quote(room.title)}</b> (<code>{room.code}</code>)\n"
            f"Каждый дарит {k} {gifts_word(k)}",
            kb.as_markup()
        )
        return
    status = "жеребьёвка проведена" if room.drawn else "ждём участников"
    await send_single(
        msg,
        f"Комната <b>{hd.quote(room.title)}</b> (<code>{room.code}</code>)\n"
        f"Каждый дарит {k} {gifts_word(k)}, {status}",
        main_kb(code, room.owner_id == msg.from_user.id)
    )

@dp.callback_query(F.data.startswith("join:"))
async def cb_join(cq: CallbackQuery, state: FSMContext):
    code = cq.data.split(":", 1)[1]
    await state.update_data(room_code=code)
    await state.set_state(Join.name)
    await send_single(cq, "Как тебя звать для списка?", InlineKeyboardMarkup(inline_keyboard=[]))

@dp.callback_query(F.data.startswith("room_participants:"))
async def cb_participants(cq: CallbackQuery):
    code = cq.data.split(":", 1)[1]
    room = await storage.get_room(code)
    if not room:
        await cq.answer("Нет комнаты", show_alert=True)
        return
    rows = await storage.joined_participants(room.id)
    names = "\n".join(f"{i+1}. {hd.quote(p.label)}" for i, p in enumerate(rows)) or "пока пусто"
    await send_long(cq, f"Участники ({len(rows)}):\n{names}", main_kb(code, room.owner_id == cq.from_user.id))

# Правила
GENERAL_RULES = (
    "Правила игры:\n"
    "• Не раскрывай, кому даришь, до обмена 🎅\n"
    "• Каждый дарит и получает одинаковое число подарков 🎁\n"
    "• Никто не дарит сам себе и не дарит одному человеку дважды\n"
    "• Для жеребьёвки нужно минимум 3 участника"
)

@dp.message(F.text == "ℹ️ Правила")
async def rules_btn(m: Message):
    room = await storage.get_user_active_room(m.from_user.id)
    text = GENERAL_RULES
    if room:
        k = room.gifts_per_participant
        text += f"\n\nВ этой комнате каждый дарит {k} {gifts_word(k)}."
    await m.answer(text, reply_markup=kb_root(bool(room)))

# Получатели
@dp.message(F.text == "📨 Получатели")
async def target_btn(m: Message):
    room = await storage.get_user_active_room(m.from_user.id)
    if not room:
        await m.answer("Сначала присоединись", reply_markup=kb_root(False))
        return
    me = await storage.get_member(room.id, m.from_user.id)
    if not me:
        await m.answer("Ты ещё не в комнате", reply_markup=kb_root(False))
        return
    rows = await storage.assignments_for_participant(room.id, me.id)
    await m.answer(render_targets(rows), reply_markup=kb_root(True))

@dp.callback_query(F.data.startswith("me_target:"))
async def cb_me_target(cq: CallbackQuery):
    code = cq.data.split(":", 1)[1]
    room = await storage.get_room(code)
    if not room:
        await cq.answer("Комната не найдена", show_alert=True)
        return
    me = await storage.get_member(room.id, cq.from_user.id)
    if not me:
        await cq.answer("Нужно присоединиться", show_alert=True)
        return
    rows = await storage.assignments_for_participant(room.id, me.id)
    await send_single(cq, render_targets(rows), main_kb(code, room.owner_id == cq.from_user.id))

# Жеребьёвка / проверка / сброс
@dp.callback_query(F.data.startswith("room_draw:"))
async def cb_draw(cq: CallbackQuery):
    room = await owner_room(cq)
    if not room:
        return
    try:
        result = await storage.generate_for_room(room.id)
    except core.SelfAssignmentDetected:
        logger.exception("Draw failed for room %s", room.code)
        await cq.answer("Внутренняя ошибка жеребьёвки, попробуй позже", show_alert=True)
        return
    except (core.AssignmentError, storage.StorageError) as e:
        await cq.answer(str(e)[:200], show_alert=True)
        return
    await cq.answer(f"Жеребьёвка готова: {len(result)} пар", show_alert=True)

@dp.callback_query(F.data.startswith("room_verify:"))
async def cb_verify(cq: CallbackQuery):
    room = await owner_room(cq)
    if not room:
        return
    report = await storage.verify_room(room.id)
    await send_long(cq, render_report(report), main_kb(room.code, True))

@dp.callback_query(F.data.startswith("room_pairs:"))
async def cb_pairs(cq: CallbackQuery):
    room = await owner_room(cq)
    if not room:
        return
    await send_long(cq, render_pairs(await storage.all_assignments(room.id)), main_kb(room.code, True))

@dp.callback_query(F.data.startswith("room_reset:"))
async def cb_reset(cq: CallbackQuery):
    room = await owner_room(cq)
    if not room:
        return
    removed = await storage.clear_assignments(room.id)
    await cq.answer(f"Сброшено пар: {removed}", show_alert=True)

@dp.callback_query(F.data.startswith("room_open:"))
async def cb_room_open(cq: CallbackQuery):
    await enter_room_menu(cq, cq.data.split(":", 1)[1])

# Сколько подарков дарит каждый
@dp.callback_query(F.data.startswith("room_gifts:"))
async def cb_room_gifts(cq: CallbackQuery):
    room = await owner_room(cq)
    if not room:
        return
    k = room.gifts_per_participant
    await send_single(cq, f"Сейчас каждый дарит {k} {gifts_word(k)}. Сколько нужно?", gifts_kb(room.code))

@dp.callback_query(F.data.startswith("room_setk:"))
async def cb_room_setk(cq: CallbackQuery):
    room = await owner_room(cq)
    if not room:
        return
    k = int(cq.data.split(":")[2])
    try:
        await storage.set_gifts_per_participant(room.id, k)
    except (ValueError, storage.StorageError) as e:
        await cq.answer(str(e)[:200], show_alert=True)
        return
    await cq.answer(f"Теперь каждый дарит {k} {gifts_word(k)}", show_alert=True)
    await enter_room_menu(cq, room.code)

# Выход
@dp.message(F.text == "🚪 Выйти из комнаты")
async def leave_room(m: Message):
    room = await storage.get_user_active_room(m.from_user.id)
    if not room:
        await m.answer("Комнат нет", reply_markup=kb_root(False))
        return
    try:
        await storage.leave_room(room, m.from_user.id)
    except storage.AlreadyDrawn as e:
        await m.answer(str(e), reply_markup=kb_root(True))
        return
    await m.answer("Вышел из комнаты", reply_markup=kb_root(False))

# ============================================================
# main
# ============================================================
async def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    await storage.init_db()

    if WEBHOOK_URL:
        # WEBHOOK MODE
        from aiogram.webhook.aiohttp_server import SimpleRequestHandler, setup_application
        from aiohttp import web

        app = web.Application()
        SimpleRequestHandler(dispatcher=dp, bot=bot).register(app, path="/webhook")
        setup_application(app, dp, bot=bot)
        await bot.set_webhook(WEBHOOK_URL + "/webhook", drop_pending_updates=True)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host="0.0.0.0", port=PORT)
        await site.start()
        logger.info("Webhook on :%s/webhook", PORT)

        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            with contextlib.suppress(Exception):
                await runner.cleanup()
            with contextlib.suppress(Exception):
                await bot.session.close()
    else:
        # POLLING MODE + HEALTH
        from aiohttp import web

        info = await bot.get_webhook_info()
        if info.url:
            await bot.delete_webhook(drop_pending_updates=True)

        got = await storage.acquire_runtime_lock(BOT_TOKEN)
        if not got:
            logger.warning("Another instance already holds the polling lock. Exiting.")
            with contextlib.suppress(Exception):
                await bot.session.close()
            return

        app = web.Application()
        async def _health(_req): return web.Response(text="ok")
        app.router.add_get("/health", _health)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host="0.0.0.0", port=PORT)
        await site.start()
        logger.info("Polling + health on :%s/health", PORT)

        try:
            await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
        finally:
            with contextlib.suppress(Exception):
                await storage.release_runtime_lock(BOT_TOKEN)
            with contextlib.suppress(Exception):
                await runner.cleanup()
            with contextlib.suppress(Exception):
                await bot.session.close()

# ============================================================
# Entrypoint
# ============================================================
if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    finally:
        with contextlib.suppress(Exception):
            asyncio.run(bot.session.close())
        sys.exit(0)
