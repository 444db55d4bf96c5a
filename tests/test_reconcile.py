import tempfile
import unittest
from pathlib import Path
from unittest import mock

from eforms.db import FormStore
from eforms.errors import FormNotFound, ReconcileFailed, ValidationFailed


class FormReconcileTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self.temp_dir.name) / "eforms.db")
        patcher = mock.patch("eforms.db.get_db_path", return_value=self.db_path)
        self.addCleanup(patcher.stop)
        patcher.start()
        self.store = FormStore()
        self.alice = self.store.register_user({"name": "Alice", "email": "alice@example.com", "password": "pw"})
        self.bob = self.store.register_user({"name": "Bob", "email": "bob@example.com", "password": "pw"})
        self.carol = self.store.register_user({"name": "Carol", "email": "carol@example.com", "password": "pw"})

    def tearDown(self):
        self.temp_dir.cleanup()

    def _create_form(self, page_id="survey", **extra):
        payload = {
            "title": "Survey",
            "page_id": page_id,
            "creator_id": self.alice["id"],
            "is_public": True,
            "tags": ["hr"],
            "questions": [
                {
                    "question_text": "A",
                    "question_type": "single_choice",
                    "options": [{"option_text": "a1"}, {"option_text": "a2", "is_correct": True}],
                },
                {"question_text": "B", "question_type": "multi_choice", "options": [{"option_text": "b1"}]},
                {"question_text": "C", "question_type": "short_text"},
            ],
        }
        payload.update(extra)
        form_id = self.store.create_form(payload)
        return form_id, self.store.get_form_by_page(page_id)

    @staticmethod
    def _payload(tree, **overrides):
        payload = {
            "title": tree["title"],
            "page_id": tree["page_id"],
            "is_public": tree["is_public"],
            "tags": [t["tag_text"] for t in tree["tags"]],
            "users_with_access": [u["user_id"] for u in tree["users_with_access"]],
            "questions": [
                {
                    "question_id": q["question_id"],
                    "question_text": q["question_text"],
                    "question_type": q["question_type"],
                    "is_required": q["is_required"],
                    "options": [
                        {"option_id": o["option_id"], "option_text": o["option_text"], "is_correct": o["is_correct"]}
                        for o in q["options"]
                    ],
                }
                for q in tree["questions"]
            ],
        }
        payload.update(overrides)
        return payload

    def _count(self, sql, params=()):
        conn = self.store._connect()
        try:
            return conn.execute(sql, params).fetchone()[0]
        finally:
            conn.close()

    def test_create_form_assigns_dense_positions(self):
        _form_id, tree = self._create_form()

        self.assertEqual([q["position"] for q in tree["questions"]], [1, 2, 3])
        self.assertEqual([o["position"] for o in tree["questions"][0]["options"]], [1, 2])
        self.assertEqual([t["tag_text"] for t in tree["tags"]], ["hr"])

    def test_delete_missing_keeps_updates_and_inserts(self):
        form_id, tree = self._create_form()
        a, b, c = tree["questions"]
        payload = self._payload(tree)
        payload["questions"] = [
            dict(payload["questions"][0], question_text="A (edited)"),
            payload["questions"][2],
            {"question_text": "D", "question_type": "short_text"},
        ]

        self.assertEqual(self.store.edit_form(form_id, payload), form_id)
        result = self.store.get_form_by_page("survey")

        self.assertEqual(len(result["questions"]), 3)
        self.assertEqual(result["questions"][0]["question_id"], a["question_id"])
        self.assertEqual(result["questions"][0]["question_text"], "A (edited)")
        self.assertEqual(result["questions"][1]["question_id"], c["question_id"])
        self.assertNotIn(result["questions"][2]["question_id"], {a["question_id"], b["question_id"], c["question_id"]})
        self.assertEqual(result["questions"][2]["question_text"], "D")
        self.assertEqual(
            self._count("SELECT COUNT(*) FROM answer_options WHERE question_id = ?", (b["question_id"],)),
            0,
        )

    def test_positions_follow_submission_order(self):
        form_id, tree = self._create_form()
        payload = self._payload(tree)
        new_question = {"question_text": "New", "options": [{"option_text": "x"}]}
        payload["questions"] = [payload["questions"][2], new_question, payload["questions"][0], payload["questions"][1]]
        payload["questions"][2]["options"].reverse()

        self.store.edit_form(form_id, payload)
        result = self.store.get_form_by_page("survey")

        self.assertEqual([q["question_text"] for q in result["questions"]], ["C", "New", "A", "B"])
        self.assertEqual([q["position"] for q in result["questions"]], [1, 2, 3, 4])
        self.assertEqual([o["option_text"] for o in result["questions"][2]["options"]], ["a2", "a1"])
        self.assertEqual([o["position"] for o in result["questions"][2]["options"]], [1, 2])

    def test_option_edit_and_delete(self):
        form_id, tree = self._create_form()
        payload = self._payload(tree)
        first_option = payload["questions"][0]["options"][0]
        payload["questions"][0]["options"] = [dict(first_option, option_text="a1!"), {"option_text": "a3"}]

        self.store.edit_form(form_id, payload)
        options = self.store.get_form_by_page("survey")["questions"][0]["options"]

        self.assertEqual([o["option_text"] for o in options], ["a1!", "a3"])
        self.assertEqual(options[0]["option_id"], first_option["option_id"])

    def test_ids_from_another_form_are_treated_as_new(self):
        form_id, tree = self._create_form()
        _other_id, other = self._create_form(page_id="other")
        foreign = other["questions"][0]
        payload = self._payload(tree)
        payload["questions"].append(
            {"question_id": foreign["question_id"], "question_text": "Borrowed", "options": []}
        )

        self.store.edit_form(form_id, payload)
        result = self.store.get_form_by_page("survey")
        untouched = self.store.get_form_by_page("other")

        self.assertEqual(len(result["questions"]), 4)
        self.assertNotEqual(result["questions"][3]["question_id"], foreign["question_id"])
        self.assertEqual(untouched["questions"][0]["question_text"], "A")

    def test_repeated_question_id_is_inserted_once_as_new(self):
        form_id, tree = self._create_form()
        payload = self._payload(tree)
        payload["questions"].append(dict(payload["questions"][0], question_text="Copy"))

        self.store.edit_form(form_id, payload)
        result = self.store.get_form_by_page("survey")

        self.assertEqual(len(result["questions"]), 4)
        self.assertEqual(result["questions"][0]["question_text"], "A")
        self.assertEqual(result["questions"][3]["question_text"], "Copy")

    def test_tag_resolution_is_idempotent(self):
        form_id, tree = self._create_form()
        payload = self._payload(tree, tags=["hr", "Python", "python"])

        self.store.edit_form(form_id, payload)
        first = self.store.get_form_by_page("survey")
        self.store.edit_form(form_id, self._payload(first, tags=["hr", "Python", "python"]))
        second = self.store.get_form_by_page("survey")

        self.assertEqual({t["tag_id"] for t in first["tags"]}, {t["tag_id"] for t in second["tags"]})
        self.assertEqual(len(second["tags"]), 3)
        self.assertEqual(self._count("SELECT COUNT(*) FROM form_tags WHERE form_id = ?", (form_id,)), 3)
        self.assertEqual(self._count("SELECT COUNT(*) FROM tags"), 3)

    def test_tag_inner_whitespace_is_significant(self):
        form_id, tree = self._create_form()

        self.store.edit_form(form_id, self._payload(tree, tags=["a  b", "a b", "  a b  "]))
        result = self.store.get_form_by_page("survey")

        self.assertEqual(sorted(t["tag_text"] for t in result["tags"]), ["a  b", "a b"])

    def test_fractional_ids_are_treated_as_new(self):
        form_id, tree = self._create_form()
        first = tree["questions"][0]
        payload = self._payload(tree)
        payload["questions"].append(
            {"question_id": first["question_id"] + 0.5, "question_text": "Fraction", "options": []}
        )

        self.store.edit_form(form_id, payload)
        result = self.store.get_form_by_page("survey")

        self.assertEqual(len(result["questions"]), 4)
        self.assertEqual(result["questions"][0]["question_text"], "A")
        self.assertEqual(result["questions"][3]["question_text"], "Fraction")

    def test_removed_tags_are_unlinked_and_shared_tags_reused(self):
        form_id, tree = self._create_form()
        other_id, _other = self._create_form(page_id="other", tags=["hr", "it"])

        self.store.edit_form(form_id, self._payload(tree, tags=["it"]))
        result = self.store.get_form_by_page("survey")

        self.assertEqual([t["tag_text"] for t in result["tags"]], ["it"])
        self.assertEqual(self._count("SELECT COUNT(*) FROM tags"), 2)
        self.assertEqual(self._count("SELECT COUNT(*) FROM form_tags WHERE form_id = ?", (other_id,)), 2)

    def test_grants_are_diffed_for_private_forms(self):
        form_id, tree = self._create_form(
            is_public=False,
            users_with_access=[self.alice["id"], "bob@example.com"],
        )
        self.assertEqual(
            {u["user_id"] for u in tree["users_with_access"]},
            {self.alice["id"], self.bob["id"]},
        )

        self.store.edit_form(form_id, self._payload(tree, users_with_access=[self.bob["id"], self.carol["id"]]))
        result = self.store.get_form_by_page("survey")

        self.assertEqual({u["user_id"] for u in result["users_with_access"]}, {self.bob["id"], self.carol["id"]})

    def test_publishing_purges_all_grants(self):
        form_id, tree = self._create_form(
            is_public=False,
            users_with_access=[self.alice["id"], self.bob["id"]],
        )
        payload = self._payload(tree, is_public=True, users_with_access=[self.carol["id"]])

        self.store.edit_form(form_id, payload)

        self.assertEqual(self._count("SELECT COUNT(*) FROM access_control WHERE form_id = ?", (form_id,)), 0)
        self.assertTrue(self.store.get_form_by_page("survey")["is_public"])

    def test_edit_without_visibility_keeps_private_form_and_grants(self):
        form_id, tree = self._create_form(is_public=False, users_with_access=[self.bob["id"]])
        payload = self._payload(tree, users_with_access=[self.bob["id"]])
        del payload["is_public"]

        with self.assertRaises(ValidationFailed):
            self.store.edit_form(form_id, payload)

        result = self.store.get_form_by_page("survey")
        self.assertFalse(result["is_public"])
        self.assertEqual([u["user_id"] for u in result["users_with_access"]], [self.bob["id"]])

    def test_private_form_with_no_grants_is_accepted_on_edit(self):
        form_id, tree = self._create_form(is_public=False, users_with_access=[self.bob["id"]])

        self.store.edit_form(form_id, self._payload(tree, users_with_access=[]))

        self.assertEqual(self._count("SELECT COUNT(*) FROM access_control WHERE form_id = ?", (form_id,)), 0)

    def test_failure_midway_leaves_form_unchanged(self):
        form_id, tree = self._create_form()
        payload = self._payload(tree, title="Changed", tags=["new"])
        payload["questions"] = payload["questions"][:1] + [{"question_text": "Z"}]

        with mock.patch("eforms.reconcile._sync_options", side_effect=RuntimeError("disk gone")):
            with self.assertRaises(ReconcileFailed):
                self.store.edit_form(form_id, payload)

        after = self.store.get_form_by_page("survey")
        self.assertEqual(after, tree)

    def test_unknown_grant_user_rolls_back(self):
        form_id, tree = self._create_form()

        with self.assertRaises(ValidationFailed):
            self.store.edit_form(form_id, self._payload(tree, is_public=False, users_with_access=["user_missing"]))

        self.assertEqual(self.store.get_form_by_page("survey"), tree)

    def test_unknown_form_is_not_found(self):
        _form_id, tree = self._create_form()

        with self.assertRaises(FormNotFound):
            self.store.edit_form(9999, self._payload(tree))

    def test_missing_title_is_rejected(self):
        form_id, tree = self._create_form()

        with self.assertRaises(ValidationFailed):
            self.store.edit_form(form_id, self._payload(tree, title=""))

    def test_private_edit_requires_grant_list(self):
        form_id, tree = self._create_form()
        payload = self._payload(tree, is_public=False)
        del payload["users_with_access"]

        with self.assertRaises(ValidationFailed):
            self.store.edit_form(form_id, payload)


if __name__ == "__main__":
    unittest.main()
