import json

from aiohttp import web

from .constants import VERSION
from .db import FormStore
from .errors import ValidationFailed

STORE_KEY = web.AppKey("store", FormStore)
CONFIG_KEY = web.AppKey("config", dict)

routes = web.RouteTableDef()


def _json_response(obj, status=200):
    return web.Response(
        status=status,
        text=json.dumps(obj, ensure_ascii=False),
        content_type="application/json",
    )


async def _read_json(request):
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationFailed("invalid JSON body") from None
    if not isinstance(payload, dict):
        raise ValidationFailed("request body must be a JSON object")
    return payload


def _store(request):
    return request.app[STORE_KEY]


@routes.get("/health")
async def health(request):
    store = _store(request)
    return _json_response({"ok": True, "db_path": store.db_path, "version": VERSION})


# ── auth ──


@routes.post("/auth/register")
async def register(request):
    payload = await _read_json(request)
    user = _store(request).register_user(payload)
    return _json_response({"message": "User registered successfully", "user": user}, status=201)


@routes.post("/auth/login")
async def login(request):
    payload = await _read_json(request)
    user = _store(request).login(payload)
    return _json_response({"message": "Login successful", "user": user})


# ── forms ──


@routes.get("/forms/latest")
async def latest_forms(request):
    limit = request.app[CONFIG_KEY].get("latest_limit", 5)
    forms = _store(request).latest_forms(limit=limit)
    return _json_response({"forms": forms})


@routes.get("/forms/popular")
async def popular_forms(request):
    limit = request.app[CONFIG_KEY].get("popular_limit", 5)
    forms = _store(request).popular_forms(limit=limit)
    return _json_response({"forms": forms})


@routes.get("/forms/search")
async def search_forms(request):
    query = request.query.get("query", "")
    if not query.strip():
        raise ValidationFailed("search query is required")
    items = _store(request).search_forms(query)
    if not items:
        return _json_response({"error": "No matching forms found."}, status=404)
    return _json_response({"items": items})


@routes.get("/forms/user/{user_id}")
async def user_forms(request):
    forms = _store(request).list_user_forms(request.match_info["user_id"])
    if not forms:
        return _json_response({"error": "No forms found for this user."}, status=404)
    return _json_response({"forms": forms})


@routes.post("/forms")
async def create_form(request):
    payload = await _read_json(request)
    form_id = _store(request).create_form(payload)
    return _json_response({"message": "Form created successfully.", "form_id": form_id}, status=201)


@routes.get("/eform/{page_id}")
async def get_form(request):
    form = _store(request).get_form_by_page(request.match_info["page_id"])
    return _json_response(form)


@routes.put("/forms/{form_id}")
async def edit_form(request):
    payload = await _read_json(request)
    form_id = _store(request).edit_form(request.match_info["form_id"], payload)
    return _json_response({"success": True, "form_id": form_id, "message": "Form updated successfully."})


@routes.delete("/forms/{form_id}")
async def delete_form(request):
    _store(request).delete_form(request.match_info["form_id"])
    return _json_response({"message": "Form deleted successfully."})


@routes.get("/forms/{form_id}/details")
async def form_details(request):
    details = _store(request).form_details(request.match_info["form_id"])
    return _json_response(details)


# ── tags ──


@routes.get("/tags")
async def list_tags(request):
    return _json_response({"tags": _store(request).list_tags()})


@routes.get("/tags/search")
async def search_tags(request):
    query = request.query.get("query", "")
    if not query.strip():
        raise ValidationFailed("query parameter is required")
    return _json_response({"tags": _store(request).search_tags(query)})


@routes.get("/tags/{tag_id}/forms")
async def tag_forms(request):
    forms = _store(request).forms_for_tag(request.match_info["tag_id"])
    return _json_response({"forms": forms})


# ── filled forms ──


@routes.post("/filled-forms")
async def submit_filled_form(request):
    payload = await _read_json(request)
    filled_form_id = _store(request).submit_filled_form(payload)
    return _json_response(
        {"message": "Form submitted successfully.", "filled_form_id": filled_form_id},
        status=201,
    )


@routes.get("/filled-forms/user/{user_id}")
async def user_filled_forms(request):
    items = _store(request).list_user_filled_forms(request.match_info["user_id"])
    if not items:
        return _json_response({"error": "No filled forms found for this user."}, status=404)
    return _json_response({"filled_forms": items})


@routes.delete("/filled-forms/user/{user_id}")
async def delete_user_filled_forms(request):
    count = _store(request).delete_user_filled_forms(request.match_info["user_id"])
    return _json_response({"deleted": count})


@routes.get("/filled-forms/{filled_form_id}")
async def view_filled_form(request):
    return _json_response(_store(request).get_filled_form(request.match_info["filled_form_id"]))


# ── likes ──


@routes.get("/likes/check")
async def check_like(request):
    user_id = request.query.get("user_id", "")
    form_id = request.query.get("form_id", "")
    if not user_id or not form_id:
        raise ValidationFailed("user_id and form_id are required")
    return _json_response({"liked": _store(request).is_liked(form_id, user_id)})


@routes.post("/likes")
async def add_like(request):
    payload = await _read_json(request)
    _store(request).add_like(payload.get("form_id"), payload.get("user_id"))
    return _json_response({"message": "Form liked successfully."}, status=201)


@routes.delete("/likes")
async def delete_like(request):
    payload = await _read_json(request)
    _store(request).delete_like(payload.get("form_id"), payload.get("user_id"))
    return _json_response({"message": "Like deleted successfully."})


@routes.get("/likes/{form_id}/count")
async def count_likes(request):
    form_id = request.match_info["form_id"]
    return _json_response({"form_id": form_id, "count": _store(request).count_likes(form_id)})


# ── comments ──


@routes.post("/comments")
async def add_comment(request):
    payload = await _read_json(request)
    comment_id = _store(request).add_comment(payload)
    return _json_response({"message": "Comment added successfully.", "comment_id": comment_id}, status=201)


@routes.delete("/comments")
async def delete_comment(request):
    payload = await _read_json(request)
    _store(request).delete_comment(payload.get("comment_id"))
    return _json_response({"message": "Comment deleted successfully."})


@routes.get("/comments/{form_id}")
async def list_comments(request):
    comments = _store(request).list_comments(request.match_info["form_id"])
    if not comments:
        return _json_response({"error": "No comments found for this form."}, status=404)
    return _json_response({"comments": comments})


# ── users ──


@routes.get("/users")
async def list_users(request):
    return _json_response({"users": _store(request).list_users()})


@routes.get("/users/search")
async def search_users(request):
    query = request.query.get("query", "")
    if not query.strip():
        raise ValidationFailed("query parameter is required")
    return _json_response({"users": _store(request).search_users(query)})


@routes.get("/users/{user_id}")
async def get_user(request):
    return _json_response({"user": _store(request).get_user(request.match_info["user_id"])})


@routes.delete("/users")
async def delete_users(request):
    payload = await _read_json(request)
    count = _store(request).delete_users(payload.get("user_ids"))
    return _json_response({"message": "Users successfully deleted.", "deleted": count})


@routes.post("/users/action")
async def user_action(request):
    payload = await _read_json(request)
    action = payload.get("action")
    count = _store(request).apply_user_action(payload.get("user_ids"), action)
    return _json_response({"message": f"Users updated: {action}", "updated": count})
