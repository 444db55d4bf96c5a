SCHEMA_SQL = r"""
PRAGMA foreign_keys = ON;
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  email TEXT NOT NULL UNIQUE,
  password_hash TEXT NOT NULL,
  is_admin INTEGER NOT NULL DEFAULT 0,
  is_blocked INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS forms (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  page_id TEXT NOT NULL UNIQUE,
  title TEXT NOT NULL,
  title_markdown TEXT,
  description TEXT,
  description_markdown TEXT,
  topic TEXT,
  image_url TEXT,
  is_public INTEGER NOT NULL DEFAULT 1,
  creator_id TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  FOREIGN KEY (creator_id) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS questions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  form_id INTEGER NOT NULL,
  question_text TEXT NOT NULL,
  question_type TEXT NOT NULL,
  is_required INTEGER NOT NULL DEFAULT 0,
  position INTEGER NOT NULL,
  show_in_results INTEGER NOT NULL DEFAULT 1,
  FOREIGN KEY (form_id) REFERENCES forms(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS answer_options (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  question_id INTEGER NOT NULL,
  option_text TEXT NOT NULL,
  position INTEGER NOT NULL,
  is_correct INTEGER NOT NULL DEFAULT 0,
  FOREIGN KEY (question_id) REFERENCES questions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS tags (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  text TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS form_tags (
  form_id INTEGER NOT NULL,
  tag_id INTEGER NOT NULL,
  PRIMARY KEY (form_id, tag_id),
  FOREIGN KEY (form_id) REFERENCES forms(id) ON DELETE CASCADE,
  FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS access_control (
  form_id INTEGER NOT NULL,
  user_id TEXT NOT NULL,
  PRIMARY KEY (form_id, user_id),
  FOREIGN KEY (form_id) REFERENCES forms(id) ON DELETE CASCADE,
  FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS filled_forms (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  form_id INTEGER NOT NULL,
  user_id TEXT,
  user_name TEXT,
  user_email TEXT,
  score REAL,
  filled_at TEXT NOT NULL,
  FOREIGN KEY (form_id) REFERENCES forms(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS answers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  filled_form_id INTEGER NOT NULL,
  question_id INTEGER,
  answer_text TEXT,
  answer_value TEXT,
  question_type TEXT,
  created_at TEXT NOT NULL,
  FOREIGN KEY (filled_form_id) REFERENCES filled_forms(id) ON DELETE CASCADE,
  FOREIGN KEY (question_id) REFERENCES questions(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS likes (
  form_id INTEGER NOT NULL,
  user_id TEXT NOT NULL,
  created_at TEXT NOT NULL,
  PRIMARY KEY (form_id, user_id),
  FOREIGN KEY (form_id) REFERENCES forms(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS comments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  form_id INTEGER NOT NULL,
  user_id TEXT,
  user_name TEXT,
  comment_text TEXT NOT NULL,
  commented_at TEXT NOT NULL,
  FOREIGN KEY (form_id) REFERENCES forms(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_questions_form ON questions(form_id, position);
CREATE INDEX IF NOT EXISTS idx_options_question ON answer_options(question_id, position);
CREATE INDEX IF NOT EXISTS idx_forms_public_created ON forms(is_public, created_at);
CREATE INDEX IF NOT EXISTS idx_filled_forms_user ON filled_forms(user_id);
"""

# One row per (question, option, tag, grant) combination; ordered by question
# position then option position, which the tree assembler relies on.
FORM_TREE_SQL = """
SELECT
  f.id AS form_id, f.page_id, f.title, f.title_markdown, f.description,
  f.description_markdown, f.topic, f.image_url, f.is_public, f.creator_id,
  f.created_at, f.updated_at,
  q.id AS question_id, q.question_text, q.question_type, q.is_required,
  q.position AS question_position, q.show_in_results,
  ao.id AS option_id, ao.option_text, ao.position AS option_position, ao.is_correct,
  t.id AS tag_id, t.text AS tag_text,
  ac.user_id AS access_user_id, u.email AS access_user_email, u.name AS access_user_name
FROM forms f
LEFT JOIN questions q ON q.form_id = f.id
LEFT JOIN answer_options ao ON ao.question_id = q.id
LEFT JOIN form_tags ft ON ft.form_id = f.id
LEFT JOIN tags t ON t.id = ft.tag_id
LEFT JOIN access_control ac ON ac.form_id = f.id
LEFT JOIN users u ON u.id = ac.user_id
WHERE f.page_id = ?
ORDER BY q.position, ao.position
"""
