"""
Table definitions and first-run seed data.

Both backends run the same script: every statement is ``CREATE TABLE IF NOT
EXISTS`` so the schema step can be repeated safely, while the seed rows are
only written when the ``settings`` table is empty.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Protocol

logger = logging.getLogger(__name__)

DATABASE_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at INTEGER
);

CREATE TABLE IF NOT EXISTS categories (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  created_at INTEGER
);

CREATE TABLE IF NOT EXISTS notes (
  id TEXT PRIMARY KEY,
  title TEXT,
  content TEXT,
  tags TEXT,
  category_id TEXT,
  created_at INTEGER,
  updated_at INTEGER
);

CREATE TABLE IF NOT EXISTS shares (
  id TEXT PRIMARY KEY,
  note_id TEXT,
  password TEXT,
  expires_at INTEGER,
  created_at INTEGER
);

CREATE TABLE IF NOT EXISTS trash (
  id TEXT PRIMARY KEY,
  title TEXT,
  content TEXT,
  tags TEXT,
  category_id TEXT,
  created_at INTEGER,
  updated_at INTEGER,
  deleted_at INTEGER
);

CREATE TABLE IF NOT EXISTS logs (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  action TEXT NOT NULL,
  target_type TEXT,
  target_id TEXT,
  details TEXT,
  ip_address TEXT,
  user_agent TEXT,
  created_at INTEGER NOT NULL
);
"""

TABLE_NAMES = ("settings", "categories", "notes", "shares", "trash", "logs")

DEFAULT_SETTINGS: Dict[str, str] = {
    "language": "zh",
}

DEFAULT_CATEGORY_ID = "default"
WELCOME_NOTE_ID = "xa-note-welcome"
WELCOME_SHARE_ID = "xa-note"

WELCOME_NOTE_CONTENT = """# XA Note

XA Note 是一款**轻量级、可完全自托管的个人笔记系统**，由您自行部署和管理，专为注重**隐私、安全与可控性**的用户设计。系统支持 Markdown 编辑、分类管理、标签系统和全文检索，提供流畅的写作体验与清晰的知识结构。

## 🌟 核心优势

### 🔐 完全的数据控制权
- **自托管部署**：所有数据仅存储在您自己的服务器中
- **隐私保护**：数据永远不会离开您的控制范围

### 📝 强大的笔记功能
- **Markdown 编辑**：实时预览的 Markdown 编辑器
- **分类管理**：灵活的分类系统，构建清晰的知识结构
- **标签系统**：多维度标签管理，快速定位相关笔记
- **数据导出**：笔记可导出为 Markdown 文件，避免数据锁定

### 🔗 安全分享与备份
- **只读分享**：支持笔记分享，可设置访问密码与过期时间控制
- **WebDAV 备份**：与云存储或私有 NAS 集成，实现数据自动同步

## ⚙️ 配置说明

所有配置都可以通过 Web 界面进行管理，无需修改配置文件：站点设置、安全配置、WebDAV 自动备份、锁屏设置与日志管理。

---
**XA Note** - 轻量级自托管笔记系统，您的个人知识管理伙伴 🚀"""


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SeedCategory:
    id: str
    name: str


@dataclass(frozen=True)
class SeedNote:
    id: str
    title: str
    content: str
    tags: str
    category_id: str


@dataclass(frozen=True)
class SeedShare:
    id: str
    note_id: str
    password: Optional[str] = None
    expires_at: Optional[int] = None


DEFAULT_CATEGORIES = (SeedCategory(id=DEFAULT_CATEGORY_ID, name="默认"),)

DEFAULT_NOTES = (
    SeedNote(
        id=WELCOME_NOTE_ID,
        title="XA Note",
        content=WELCOME_NOTE_CONTENT,
        tags="",
        category_id=DEFAULT_CATEGORY_ID,
    ),
)

DEFAULT_SHARES = (SeedShare(id=WELCOME_SHARE_ID, note_id=WELCOME_NOTE_ID),)


class _Runnable(Protocol):
    async def run(self, *params: Any) -> Any:
        ...


PrepareFn = Callable[[str], _Runnable]


def split_statements(script: str) -> Iterator[str]:
    """
    Yield the individual statements of a SQL script.

    Splits on ``;`` outside of quoted strings, identifiers and ``--`` / ``/* */``
    comments. Empty statements are dropped.
    """
    buf: list[str] = []
    quote: Optional[str] = None
    i = 0
    n = len(script)
    while i < n:
        ch = script[i]
        if quote:
            buf.append(ch)
            if ch == quote:
                # Doubled quote is an escaped quote inside the literal.
                if i + 1 < n and script[i + 1] == quote:
                    buf.append(script[i + 1])
                    i += 1
                else:
                    quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
            buf.append(ch)
        elif ch == "-" and script.startswith("--", i):
            end = script.find("\n", i)
            i = n if end == -1 else end
            continue
        elif ch == "/" and script.startswith("/*", i):
            end = script.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        elif ch == ";":
            stmt = "".join(buf).strip()
            if stmt:
                yield stmt
            buf = []
        else:
            buf.append(ch)
        i += 1
    stmt = "".join(buf).strip()
    if stmt:
        yield stmt


async def initialize_default_data(
    prepare: PrepareFn,
    is_new_database: bool,
    *,
    backfill_settings: bool = False,
) -> None:
    """
    Insert the first-run rows.

    Order matters: the welcome note references the default category and the
    welcome share references the note.
    """
    if not is_new_database:
        if backfill_settings:
            await _backfill_default_settings(prepare)
        return

    logger.info("Fresh database detected, inserting default data")
    for key, value in DEFAULT_SETTINGS.items():
        await prepare(
            "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)"
        ).run(key, value, now_ms())

    for category in DEFAULT_CATEGORIES:
        await prepare(
            "INSERT INTO categories (id, name, created_at) VALUES (?, ?, ?)"
        ).run(category.id, category.name, now_ms())

    for note in DEFAULT_NOTES:
        timestamp = now_ms()
        await prepare(
            """
            INSERT INTO notes (id, title, content, tags, category_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """
        ).run(
            note.id,
            note.title,
            note.content,
            note.tags,
            note.category_id,
            timestamp,
            timestamp,
        )

    for share in DEFAULT_SHARES:
        await prepare(
            """
            INSERT INTO shares (id, note_id, password, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?)
            """
        ).run(share.id, share.note_id, share.password, share.expires_at, now_ms())


async def _backfill_default_settings(prepare: PrepareFn) -> None:
    added = 0
    for key, value in DEFAULT_SETTINGS.items():
        result = await prepare(
            "INSERT OR IGNORE INTO settings (key, value, updated_at) VALUES (?, ?, ?)"
        ).run(key, value, now_ms())
        added += result.changes
    if added:
        logger.info("Backfilled %d missing default settings", added)
