from .errors import FormNotFound


def _form_node(row):
    return {
        "form_id": row["form_id"],
        "page_id": row["page_id"],
        "title": row["title"],
        "title_markdown": row["title_markdown"],
        "description": row["description"],
        "description_markdown": row["description_markdown"],
        "topic": row["topic"],
        "image_url": row["image_url"],
        "is_public": bool(row["is_public"]),
        "creator_id": row["creator_id"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "tags": [],
        "questions": [],
        "users_with_access": [],
    }


def _question_node(row):
    return {
        "question_id": row["question_id"],
        "question_text": row["question_text"],
        "question_type": row["question_type"],
        "is_required": bool(row["is_required"]),
        "position": row["question_position"],
        "show_in_results": bool(row["show_in_results"]),
        "options": [],
    }


def assemble_form(rows):
    """
    Fold the flat rows of FORM_TREE_SQL into one nested form document.

    Rows must already be ordered by question position then option position;
    question and option order is taken from the rows as given. The tag and
    access joins multiply every question/option row, so questions, options,
    tags and grants are each de-duplicated by id.
    """
    rows = list(rows or [])
    if not rows:
        raise FormNotFound("form not found")

    form = _form_node(rows[0])
    questions = {}
    seen_options = set()
    seen_tags = set()
    seen_users = set()

    for row in rows:
        question_id = row["question_id"]
        if question_id is not None:
            question = questions.get(question_id)
            if question is None:
                question = _question_node(row)
                questions[question_id] = question
                form["questions"].append(question)
            option_id = row["option_id"]
            if option_id is not None and option_id not in seen_options:
                seen_options.add(option_id)
                question["options"].append(
                    {
                        "option_id": option_id,
                        "option_text": row["option_text"],
                        "position": row["option_position"],
                        "is_correct": bool(row["is_correct"]),
                    }
                )

        tag_id = row["tag_id"]
        if tag_id is not None and tag_id not in seen_tags:
            seen_tags.add(tag_id)
            form["tags"].append({"tag_id": tag_id, "tag_text": row["tag_text"]})

        user_id = row["access_user_id"]
        if not form["is_public"] and user_id is not None and user_id not in seen_users:
            seen_users.add(user_id)
            form["users_with_access"].append(
                {
                    "user_id": user_id,
                    "email": row["access_user_email"],
                    "name": row["access_user_name"],
                }
            )

    return form
