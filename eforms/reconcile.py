"""
Converge a form's questions, options, tags and access grants to a submitted
desired state.

Every pass follows the same rule: ids the caller sends back and that still
belong to the parent are updated in place, anything else is inserted as new,
and stored ids the caller no longer mentions are deleted. Positions are
rewritten from submission order on every pass. The functions here only issue
statements on the connection they are given; committing or rolling back is
the caller's job.
"""

import logging

from .diff import diff_ids
from .errors import FormNotFound, ValidationFailed
from .utils import normalize_tags, normalize_text, now_iso, to_bool, to_int

logger = logging.getLogger("EForms")

DEFAULT_QUESTION_TYPE = "short_text"


def _normalize_option(option):
    if not isinstance(option, dict):
        raise ValidationFailed("each option must be an object")
    return {
        "option_id": to_int(option.get("option_id")),
        "option_text": normalize_text(option.get("option_text", "")),
        "is_correct": to_bool(option.get("is_correct")),
    }


def _normalize_question(question):
    if not isinstance(question, dict):
        raise ValidationFailed("each question must be an object")
    options = question.get("options") or []
    if not isinstance(options, list):
        raise ValidationFailed("question options must be a list")
    return {
        "question_id": to_int(question.get("question_id")),
        "question_text": normalize_text(question.get("question_text", "")),
        "question_type": normalize_text(question.get("question_type", "")) or DEFAULT_QUESTION_TYPE,
        "is_required": to_bool(question.get("is_required")),
        "show_in_results": to_bool(question.get("show_in_results"), default=True),
        "options": [_normalize_option(o) for o in options],
    }


def normalize_form_payload(payload, creating=False):
    """Validate a create/edit request body and return the desired form state.

    Raises ValidationFailed before any storage is touched.
    """
    if not isinstance(payload, dict):
        raise ValidationFailed("request body must be a JSON object")

    title = normalize_text(payload.get("title", ""))
    page_id = normalize_text(payload.get("page_id", ""))
    if not title:
        raise ValidationFailed("title is required")
    if not page_id:
        raise ValidationFailed("page_id is required")

    questions = payload.get("questions")
    if not isinstance(questions, list):
        raise ValidationFailed("questions must be a list")
    if creating and not questions:
        raise ValidationFailed("at least one question is required")

    tags = payload.get("tags") or []
    if not isinstance(tags, list):
        raise ValidationFailed("tags must be a list of strings")

    # An edit that omits visibility must not silently publish a private form.
    if not creating and payload.get("is_public") is None:
        raise ValidationFailed("is_public is required")
    is_public = to_bool(payload.get("is_public"), default=True)
    users_with_access = []
    if not is_public:
        users_with_access = payload.get("users_with_access")
        if not isinstance(users_with_access, list):
            raise ValidationFailed("users_with_access is required for private forms")
        if creating and not users_with_access:
            raise ValidationFailed("users_with_access is required for private forms")
        users_with_access = [normalize_text(u) for u in users_with_access if normalize_text(u)]

    return {
        "title": title,
        "title_markdown": payload.get("title_markdown"),
        "description": payload.get("description"),
        "description_markdown": payload.get("description_markdown"),
        "topic": normalize_text(payload.get("topic", "")) or None,
        "image_url": normalize_text(payload.get("image_url", "")) or None,
        "is_public": is_public,
        "page_id": page_id,
        "creator_id": normalize_text(payload.get("creator_id", "")) or None,
        "tags": normalize_tags(tags),
        "users_with_access": users_with_access,
        "questions": [_normalize_question(q) for q in questions],
    }


def resolve_user_refs(conn, refs):
    """Map user ids or e-mail addresses to user ids; unknown users are rejected."""
    user_ids = []
    missing = []
    for ref in refs or []:
        if "@" in ref:
            row = conn.execute("SELECT id FROM users WHERE email = ?", (ref,)).fetchone()
        else:
            row = conn.execute("SELECT id FROM users WHERE id = ?", (ref,)).fetchone()
        if row is None:
            missing.append(ref)
            continue
        user_ids.append(row["id"])
    if missing:
        raise ValidationFailed(f"unknown users: {', '.join(missing)}")
    return list(dict.fromkeys(user_ids))


def _sync_access(conn, form_id, is_public, user_ids):
    if is_public:
        cur = conn.execute("DELETE FROM access_control WHERE form_id = ?", (form_id,))
        return {"grants_added": 0, "grants_removed": max(cur.rowcount, 0)}

    rows = conn.execute("SELECT user_id FROM access_control WHERE form_id = ?", (form_id,)).fetchall()
    diff = diff_ids([r["user_id"] for r in rows], user_ids)
    for user_id in diff.to_add:
        conn.execute(
            "INSERT OR IGNORE INTO access_control(form_id,user_id) VALUES(?,?)",
            (form_id, user_id),
        )
    if diff.to_remove:
        placeholders = ",".join(["?"] * len(diff.to_remove))
        conn.execute(
            f"DELETE FROM access_control WHERE form_id = ? AND user_id IN ({placeholders})",
            [form_id] + diff.to_remove,
        )
    return {"grants_added": len(diff.to_add), "grants_removed": len(diff.to_remove)}


def resolve_tag_id(conn, text):
    row = conn.execute("SELECT id FROM tags WHERE text = ?", (text,)).fetchone()
    if row:
        return row["id"]
    return conn.execute("INSERT INTO tags(text) VALUES(?)", (text,)).lastrowid


def _sync_tags(conn, form_id, tags):
    rows = conn.execute(
        """
        SELECT t.id, t.text
        FROM tags t
        JOIN form_tags ft ON ft.tag_id = t.id
        WHERE ft.form_id = ?
        """,
        (form_id,),
    ).fetchall()
    linked = {r["text"]: r["id"] for r in rows}
    diff = diff_ids(list(linked), tags)

    if diff.to_remove:
        tag_ids = [linked[text] for text in diff.to_remove]
        placeholders = ",".join(["?"] * len(tag_ids))
        conn.execute(
            f"DELETE FROM form_tags WHERE form_id = ? AND tag_id IN ({placeholders})",
            [form_id] + tag_ids,
        )
    for text in diff.to_add:
        conn.execute(
            "INSERT OR IGNORE INTO form_tags(form_id,tag_id) VALUES(?,?)",
            (form_id, resolve_tag_id(conn, text)),
        )
    return {"tags_added": len(diff.to_add), "tags_removed": len(diff.to_remove)}


def _sync_options(conn, question_id, options):
    rows = conn.execute(
        "SELECT id FROM answer_options WHERE question_id = ? ORDER BY position",
        (question_id,),
    ).fetchall()
    diff = diff_ids([r["id"] for r in rows], [o["option_id"] for o in options if o["option_id"] is not None])

    if diff.to_remove:
        placeholders = ",".join(["?"] * len(diff.to_remove))
        conn.execute(f"DELETE FROM answer_options WHERE id IN ({placeholders})", diff.to_remove)

    keep = set(diff.to_keep)
    added = 0
    for position, option in enumerate(options, start=1):
        option_id = option["option_id"]
        if option_id in keep:
            # Claim the id so a repeated id in the submission is inserted as new.
            keep.discard(option_id)
            conn.execute(
                "UPDATE answer_options SET option_text=?, position=?, is_correct=? WHERE id=?",
                (option["option_text"], position, int(option["is_correct"]), option_id),
            )
            continue
        conn.execute(
            "INSERT INTO answer_options(question_id,option_text,position,is_correct) VALUES(?,?,?,?)",
            (question_id, option["option_text"], position, int(option["is_correct"])),
        )
        added += 1
    return {"options_added": added, "options_removed": len(diff.to_remove)}


def _sync_questions(conn, form_id, questions):
    rows = conn.execute(
        "SELECT id FROM questions WHERE form_id = ? ORDER BY position",
        (form_id,),
    ).fetchall()
    diff = diff_ids([r["id"] for r in rows], [q["question_id"] for q in questions if q["question_id"] is not None])

    if diff.to_remove:
        placeholders = ",".join(["?"] * len(diff.to_remove))
        conn.execute(f"DELETE FROM questions WHERE id IN ({placeholders})", diff.to_remove)

    stats = {"questions_added": 0, "questions_removed": len(diff.to_remove), "options_added": 0, "options_removed": 0}
    keep = set(diff.to_keep)
    for position, question in enumerate(questions, start=1):
        question_id = question["question_id"]
        values = (
            question["question_text"],
            question["question_type"],
            int(question["is_required"]),
            position,
            int(question["show_in_results"]),
        )
        if question_id in keep:
            keep.discard(question_id)
            conn.execute(
                """
                UPDATE questions SET
                  question_text=?, question_type=?, is_required=?, position=?, show_in_results=?
                WHERE id=?
                """,
                values + (question_id,),
            )
        else:
            question_id = conn.execute(
                """
                INSERT INTO questions(question_text,question_type,is_required,position,show_in_results,form_id)
                VALUES(?,?,?,?,?,?)
                """,
                values + (form_id,),
            ).lastrowid
            stats["questions_added"] += 1

        option_stats = _sync_options(conn, question_id, question["options"])
        stats["options_added"] += option_stats["options_added"]
        stats["options_removed"] += option_stats["options_removed"]
    return stats


def apply_form_children(conn, form_id, desired, user_ids):
    stats = {}
    stats.update(_sync_access(conn, form_id, desired["is_public"], user_ids))
    stats.update(_sync_tags(conn, form_id, desired["tags"]))
    stats.update(_sync_questions(conn, form_id, desired["questions"]))
    return stats


def reconcile_form(conn, form_id, desired):
    """
    Apply ``desired`` (see normalize_form_payload) to the stored form.

    Runs inside the caller's transaction. There is no locking: two concurrent
    edits of the same form race and the last commit wins, including deletion
    of questions the other editor just added.
    """
    row = conn.execute("SELECT id FROM forms WHERE id = ?", (form_id,)).fetchone()
    if not row:
        raise FormNotFound("form not found")

    user_ids = [] if desired["is_public"] else resolve_user_refs(conn, desired["users_with_access"])

    conn.execute(
        """
        UPDATE forms SET
          title=?, title_markdown=?, description=?, description_markdown=?, topic=?,
          image_url=?, is_public=?, page_id=?, updated_at=?
        WHERE id=?
        """,
        (
            desired["title"],
            desired["title_markdown"],
            desired["description"],
            desired["description_markdown"],
            desired["topic"],
            desired["image_url"],
            int(desired["is_public"]),
            desired["page_id"],
            now_iso(),
            form_id,
        ),
    )
    stats = apply_form_children(conn, form_id, desired, user_ids)
    logger.info(
        "reconciled form=%s grants +%d/-%d tags +%d/-%d questions +%d/-%d options +%d/-%d",
        form_id,
        stats["grants_added"],
        stats["grants_removed"],
        stats["tags_added"],
        stats["tags_removed"],
        stats["questions_added"],
        stats["questions_removed"],
        stats["options_added"],
        stats["options_removed"],
    )
    return form_id
