import json
import logging
import os
import sqlite3
import uuid

from werkzeug.security import check_password_hash, generate_password_hash

from .assemble import assemble_form
from .constants import SCHEMA_VERSION, UserAction
from .errors import Conflict, EFormsError, FormNotFound, NotFound, ReconcileFailed, Unauthorized, ValidationFailed
from .paths import get_db_path
from .reconcile import apply_form_children, normalize_form_payload, reconcile_form, resolve_user_refs
from .schema import FORM_TREE_SQL, SCHEMA_SQL
from .utils import json_dumps, normalize_text, now_iso, to_int

logger = logging.getLogger("EForms")

_FORM_SUMMARY_FIELDS = "f.id AS form_id, f.page_id, f.title, f.description, f.image_url, f.created_at"


def _is_unique_violation(exc):
    return "UNIQUE" in str(exc).upper()


class FormStore:
    def __init__(self, db_path=None, busy_timeout_ms=5000):
        self.db_path = db_path or get_db_path()
        self.busy_timeout_ms = int(busy_timeout_ms)
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        return conn

    def _init_db(self):
        conn = self._connect()
        try:
            conn.executescript(SCHEMA_SQL)
            conn.execute(
                "INSERT OR REPLACE INTO meta(key,value) VALUES('schema_version', ?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()
        finally:
            conn.close()

    # ── users ──

    @staticmethod
    def _row_to_user(row):
        return {
            "id": row["id"],
            "name": row["name"],
            "email": row["email"],
            "is_admin": bool(row["is_admin"]),
            "is_blocked": bool(row["is_blocked"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def register_user(self, payload):
        payload = payload or {}
        name = normalize_text(payload.get("name", ""))
        email = normalize_text(payload.get("email", ""))
        password = payload.get("password") or ""
        if not name or not email or not password:
            raise ValidationFailed("name, email and password are required")

        user_id = f"user_{uuid.uuid4().hex}"
        now = now_iso()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO users(id,name,email,password_hash,created_at,updated_at)
                VALUES(?,?,?,?,?,?)
                """,
                (user_id, name, email, generate_password_hash(password), now, now),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise Conflict("email already exists") from exc
            raise
        finally:
            conn.close()
        logger.info("registered user %s", user_id)
        return {"id": user_id, "name": name, "email": email}

    def login(self, payload):
        payload = payload or {}
        email = normalize_text(payload.get("email", ""))
        password = payload.get("password") or ""
        if not email or not password:
            raise ValidationFailed("email and password are required")

        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        finally:
            conn.close()
        if row is None or not check_password_hash(row["password_hash"], password):
            raise Unauthorized("invalid email or password")
        user = self._row_to_user(row)
        return {k: user[k] for k in ("id", "name", "email", "is_admin", "is_blocked")}

    def get_user(self, user_id):
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            if not row:
                raise NotFound("user not found")
            return self._row_to_user(row)
        finally:
            conn.close()

    def list_users(self):
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at ASC, name ASC").fetchall()
            return [self._row_to_user(r) for r in rows]
        finally:
            conn.close()

    def search_users(self, query):
        query = normalize_text(query)
        if not query:
            raise ValidationFailed("query is required")
        like_q = f"%{query}%"
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM users WHERE name LIKE ? OR email LIKE ? ORDER BY name ASC",
                (like_q, like_q),
            ).fetchall()
            return [self._row_to_user(r) for r in rows]
        finally:
            conn.close()

    @staticmethod
    def _user_ids(user_ids):
        if not isinstance(user_ids, list):
            raise ValidationFailed("user_ids must be a list")
        return [normalize_text(u) for u in user_ids if normalize_text(u)]

    def delete_users(self, user_ids):
        ids = self._user_ids(user_ids)
        if not ids:
            return 0
        placeholders = ",".join(["?"] * len(ids))
        conn = self._connect()
        try:
            cur = conn.execute(f"DELETE FROM users WHERE id IN ({placeholders})", ids)
            conn.commit()
            logger.info("deleted %d users", cur.rowcount)
            return cur.rowcount
        finally:
            conn.close()

    @staticmethod
    def _action_update(action):
        if action is UserAction.BLOCK:
            return "is_blocked", 1
        if action is UserAction.UNBLOCK:
            return "is_blocked", 0
        if action is UserAction.MAKE_ADMIN:
            return "is_admin", 1
        if action is UserAction.REMOVE_ADMIN:
            return "is_admin", 0
        raise ValidationFailed(f"unsupported action: {action}")

    def apply_user_action(self, user_ids, action):
        if not isinstance(action, UserAction):
            try:
                action = UserAction(normalize_text(action))
            except ValueError:
                raise ValidationFailed("invalid action") from None
        ids = self._user_ids(user_ids)
        if not ids:
            return 0
        column, value = self._action_update(action)
        placeholders = ",".join(["?"] * len(ids))
        conn = self._connect()
        try:
            cur = conn.execute(
                f"UPDATE users SET {column} = ?, updated_at = ? WHERE id IN ({placeholders})",
                [value, now_iso()] + ids,
            )
            conn.commit()
            logger.info("user action %s applied to %d users", action.value, cur.rowcount)
            return cur.rowcount
        finally:
            conn.close()

    # ── forms ──

    @staticmethod
    def _form_id(form_id):
        value = to_int(form_id)
        if value is None:
            raise ValidationFailed("invalid form id")
        return value

    @staticmethod
    def _row_to_form(row):
        form = dict(row)
        if "id" in form:
            form["form_id"] = form.pop("id")
        if "is_public" in form:
            form["is_public"] = bool(form["is_public"])
        return form

    def _require_form(self, conn, form_id):
        row = conn.execute("SELECT id FROM forms WHERE id = ?", (form_id,)).fetchone()
        if not row:
            raise FormNotFound("form not found")

    def create_form(self, payload):
        desired = normalize_form_payload(payload, creating=True)
        now = now_iso()
        conn = self._connect()
        try:
            user_ids = [] if desired["is_public"] else resolve_user_refs(conn, desired["users_with_access"])
            form_id = conn.execute(
                """
                INSERT INTO forms(
                  page_id,title,title_markdown,description,description_markdown,topic,
                  image_url,is_public,creator_id,created_at,updated_at
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    desired["page_id"],
                    desired["title"],
                    desired["title_markdown"],
                    desired["description"],
                    desired["description_markdown"],
                    desired["topic"],
                    desired["image_url"],
                    int(desired["is_public"]),
                    desired["creator_id"],
                    now,
                    now,
                ),
            ).lastrowid
            apply_form_children(conn, form_id, desired, user_ids)
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            if _is_unique_violation(exc):
                raise Conflict("page_id already exists") from exc
            raise ValidationFailed("form references an unknown user") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info("created form %s page_id=%s questions=%d", form_id, desired["page_id"], len(desired["questions"]))
        return form_id

    def get_form_by_page(self, page_id):
        conn = self._connect()
        try:
            rows = conn.execute(FORM_TREE_SQL, (page_id,)).fetchall()
            logger.debug("form tree page_id=%r rows=%d", page_id, len(rows))
            return assemble_form(rows)
        finally:
            conn.close()

    def edit_form(self, form_id, payload):
        form_id = self._form_id(form_id)
        desired = normalize_form_payload(payload)
        conn = self._connect()
        try:
            reconcile_form(conn, form_id, desired)
            conn.commit()
            return form_id
        except EFormsError:
            conn.rollback()
            raise
        except Exception as exc:
            conn.rollback()
            logger.exception("edit of form %s rolled back", form_id)
            raise ReconcileFailed("form update failed") from exc
        finally:
            conn.close()

    def delete_form(self, form_id):
        form_id = self._form_id(form_id)
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM forms WHERE id = ?", (form_id,))
            if cur.rowcount == 0:
                raise FormNotFound("form not found")
            conn.commit()
            logger.info("deleted form %s", form_id)
        finally:
            conn.close()

    def list_user_forms(self, user_id):
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM forms WHERE creator_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            ).fetchall()
            return [self._row_to_form(r) for r in rows]
        finally:
            conn.close()

    def latest_forms(self, limit=5):
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT {_FORM_SUMMARY_FIELDS}
                FROM forms f
                WHERE f.is_public = 1
                ORDER BY f.created_at DESC, f.id DESC
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def popular_forms(self, limit=5):
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT {_FORM_SUMMARY_FIELDS}, COUNT(ff.id) AS filled_count
                FROM forms f
                LEFT JOIN filled_forms ff ON ff.form_id = f.id
                WHERE f.is_public = 1
                GROUP BY f.id
                ORDER BY filled_count DESC, f.id DESC
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def search_forms(self, query):
        query = normalize_text(query)
        if not query:
            raise ValidationFailed("query is required")
        like_q = f"%{query}%"
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT DISTINCT f.id AS form_id, f.page_id, f.title
                FROM forms f
                LEFT JOIN questions q ON q.form_id = f.id
                LEFT JOIN answer_options ao ON ao.question_id = q.id
                LEFT JOIN form_tags ft ON ft.form_id = f.id
                LEFT JOIN tags t ON t.id = ft.tag_id
                WHERE f.title LIKE ?
                   OR f.description LIKE ?
                   OR f.topic LIKE ?
                   OR q.question_text LIKE ?
                   OR ao.option_text LIKE ?
                   OR t.text LIKE ?
                ORDER BY f.id ASC
                """,
                (like_q,) * 6,
            ).fetchall()
            logger.debug("search_forms q=%r rows=%d", query, len(rows))
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def form_details(self, form_id):
        form_id = self._form_id(form_id)
        conn = self._connect()
        try:
            filled = conn.execute(
                "SELECT * FROM filled_forms WHERE form_id = ? ORDER BY filled_at ASC, id ASC",
                (form_id,),
            ).fetchall()
            if not filled:
                raise NotFound("no filled form exists for this form")
            form = conn.execute("SELECT * FROM forms WHERE id = ?", (form_id,)).fetchone()
            questions = conn.execute(
                "SELECT * FROM questions WHERE form_id = ? ORDER BY position",
                (form_id,),
            ).fetchall()
            options = conn.execute(
                """
                SELECT ao.*
                FROM answer_options ao
                JOIN questions q ON q.id = ao.question_id
                WHERE q.form_id = ?
                ORDER BY q.position, ao.position
                """,
                (form_id,),
            ).fetchall()
            answers = conn.execute(
                "SELECT * FROM answers WHERE filled_form_id = ? ORDER BY id",
                (filled[0]["id"],),
            ).fetchall()
            comments = conn.execute(
                "SELECT * FROM comments WHERE form_id = ? ORDER BY commented_at DESC, id DESC",
                (form_id,),
            ).fetchall()
            likes = conn.execute("SELECT * FROM likes WHERE form_id = ?", (form_id,)).fetchall()
            filled_forms = [dict(r) for r in filled]
            return {
                "filled_form": filled_forms[0],
                "filled_forms": filled_forms,
                "form": self._row_to_form(form),
                "questions": [dict(r) for r in questions],
                "answer_options": [dict(r) for r in options],
                "answers": [self._row_to_answer(r) for r in answers],
                "comments": [dict(r) for r in comments],
                "likes": [dict(r) for r in likes],
            }
        finally:
            conn.close()

    # ── tags ──

    def list_tags(self):
        conn = self._connect()
        try:
            rows = conn.execute("SELECT id AS tag_id, text AS tag_text FROM tags ORDER BY text ASC").fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def search_tags(self, query):
        query = normalize_text(query)
        if not query:
            raise ValidationFailed("query is required")
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT id AS tag_id, text AS tag_text FROM tags WHERE text LIKE ? ORDER BY text ASC",
                (f"%{query}%",),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def forms_for_tag(self, tag_id):
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT {_FORM_SUMMARY_FIELDS}
                FROM forms f
                JOIN form_tags ft ON ft.form_id = f.id
                WHERE ft.tag_id = ? AND f.is_public = 1
                ORDER BY f.created_at DESC, f.id DESC
                """,
                (to_int(tag_id),),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    # ── filled forms ──

    @staticmethod
    def _row_to_answer(row):
        answer = dict(row)
        raw = answer.get("answer_value")
        if raw is not None:
            try:
                answer["answer_value"] = json.loads(raw)
            except (TypeError, ValueError):
                pass
        return answer

    def submit_filled_form(self, payload):
        payload = payload or {}
        form_id = to_int(payload.get("form_id"))
        user_id = normalize_text(payload.get("user_id", ""))
        answers = payload.get("answers")
        if form_id is None or not user_id or not isinstance(answers, list) or not answers:
            raise ValidationFailed("form_id, user_id and answers are required")
        score = payload.get("score")
        if score is not None:
            try:
                score = float(score)
            except (TypeError, ValueError):
                raise ValidationFailed("score must be a number") from None

        now = now_iso()
        conn = self._connect()
        try:
            self._require_form(conn, form_id)
            question_types = {
                r["id"]: r["question_type"]
                for r in conn.execute("SELECT id, question_type FROM questions WHERE form_id = ?", (form_id,))
            }
            filled_form_id = conn.execute(
                """
                INSERT INTO filled_forms(form_id,user_id,user_name,user_email,score,filled_at)
                VALUES(?,?,?,?,?,?)
                """,
                (
                    form_id,
                    user_id,
                    normalize_text(payload.get("user_name", "")) or None,
                    normalize_text(payload.get("user_email", "")) or None,
                    score,
                    now,
                ),
            ).lastrowid
            for answer in answers:
                if not isinstance(answer, dict):
                    raise ValidationFailed("each answer must be an object")
                question_id = to_int(answer.get("question_id"))
                value = answer.get("answer_value")
                conn.execute(
                    """
                    INSERT INTO answers(filled_form_id,question_id,answer_text,answer_value,question_type,created_at)
                    VALUES(?,?,?,?,?,?)
                    """,
                    (
                        filled_form_id,
                        question_id if question_id in question_types else None,
                        answer.get("answer_text") or None,
                        json_dumps(value) if value is not None else None,
                        answer.get("question_type") or question_types.get(question_id),
                        now,
                    ),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info("form %s submitted by %s as filled form %s", form_id, user_id, filled_form_id)
        return filled_form_id

    def list_user_filled_forms(self, user_id):
        conn = self._connect()
        try:
            rows = conn.execute(
                """
                SELECT ff.id AS filled_form_id, f.id AS form_id, f.title, f.created_at, f.page_id, ff.filled_at, ff.score
                FROM filled_forms ff
                JOIN forms f ON f.id = ff.form_id
                WHERE ff.user_id = ?
                ORDER BY ff.filled_at DESC, ff.id DESC
                """,
                (user_id,),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_filled_form(self, filled_form_id):
        conn = self._connect()
        try:
            filled = conn.execute(
                "SELECT * FROM filled_forms WHERE id = ?",
                (to_int(filled_form_id),),
            ).fetchone()
            if not filled:
                raise NotFound("filled form not found")
            form = conn.execute("SELECT * FROM forms WHERE id = ?", (filled["form_id"],)).fetchone()
            questions = conn.execute(
                "SELECT * FROM questions WHERE form_id = ? ORDER BY position",
                (filled["form_id"],),
            ).fetchall()
            answers = [
                self._row_to_answer(r)
                for r in conn.execute(
                    "SELECT * FROM answers WHERE filled_form_id = ? ORDER BY id",
                    (filled["id"],),
                ).fetchall()
            ]
            by_question = {}
            for answer in answers:
                by_question.setdefault(answer["question_id"], []).append(answer)

            question_nodes = []
            for q in questions:
                options = conn.execute(
                    """
                    SELECT id AS option_id, option_text, is_correct, position
                    FROM answer_options WHERE question_id = ? ORDER BY position
                    """,
                    (q["id"],),
                ).fetchall()
                node = dict(q)
                node["options"] = [{**dict(o), "is_correct": bool(o["is_correct"])} for o in options]
                node["answers"] = by_question.get(q["id"], [])
                question_nodes.append(node)

            return {
                "filled_form": dict(filled),
                "form": self._row_to_form(form),
                "questions": question_nodes,
                "answers": {str(a["question_id"]): a for a in answers if a["question_id"] is not None},
            }
        finally:
            conn.close()

    def delete_user_filled_forms(self, user_id):
        user_id = normalize_text(user_id)
        if not user_id:
            raise ValidationFailed("user_id is required")
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM filled_forms WHERE user_id = ?", (user_id,))
            conn.commit()
            logger.info("deleted %d filled forms of user %s", cur.rowcount, user_id)
            return cur.rowcount
        finally:
            conn.close()

    # ── likes ──

    @staticmethod
    def _like_key(form_id, user_id):
        form_id = to_int(form_id)
        user_id = normalize_text(user_id)
        if form_id is None or not user_id:
            raise ValidationFailed("form_id and user_id are required")
        return form_id, user_id

    def is_liked(self, form_id, user_id):
        form_id, user_id = self._like_key(form_id, user_id)
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT 1 FROM likes WHERE form_id = ? AND user_id = ?",
                (form_id, user_id),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def add_like(self, form_id, user_id):
        form_id, user_id = self._like_key(form_id, user_id)
        conn = self._connect()
        try:
            self._require_form(conn, form_id)
            conn.execute(
                "INSERT OR IGNORE INTO likes(form_id,user_id,created_at) VALUES(?,?,?)",
                (form_id, user_id, now_iso()),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_like(self, form_id, user_id):
        form_id, user_id = self._like_key(form_id, user_id)
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM likes WHERE form_id = ? AND user_id = ?", (form_id, user_id))
            if cur.rowcount == 0:
                raise NotFound("like not found")
            conn.commit()
        finally:
            conn.close()

    def count_likes(self, form_id):
        conn = self._connect()
        try:
            row = conn.execute("SELECT COUNT(*) AS total FROM likes WHERE form_id = ?", (to_int(form_id),)).fetchone()
            return int(row["total"] if row else 0)
        finally:
            conn.close()

    # ── comments ──

    def add_comment(self, payload):
        payload = payload or {}
        form_id = to_int(payload.get("form_id"))
        user_id = normalize_text(payload.get("user_id", ""))
        user_name = normalize_text(payload.get("user_name", ""))
        text = str(payload.get("comment_text") or "").strip()
        if form_id is None or not user_id or not user_name or not text:
            raise ValidationFailed("form_id, user_id, user_name and comment_text are required")
        conn = self._connect()
        try:
            self._require_form(conn, form_id)
            comment_id = conn.execute(
                """
                INSERT INTO comments(form_id,user_id,user_name,comment_text,commented_at)
                VALUES(?,?,?,?,?)
                """,
                (form_id, user_id, user_name, text, now_iso()),
            ).lastrowid
            conn.commit()
            return comment_id
        finally:
            conn.close()

    def delete_comment(self, comment_id):
        comment_id = to_int(comment_id)
        if comment_id is None:
            raise ValidationFailed("comment_id is required")
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
            if cur.rowcount == 0:
                raise NotFound("comment not found")
            conn.commit()
        finally:
            conn.close()

    def list_comments(self, form_id):
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM comments WHERE form_id = ? ORDER BY commented_at DESC, id DESC",
                (to_int(form_id),),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()
