import os


def get_data_dir():
    # EFORMS_DATA_DIR wins; otherwise keep data next to the package.
    base = os.environ.get("EFORMS_DATA_DIR") or ""
    if base:
        data_dir = base
    else:
        data_dir = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data")
    os.makedirs(data_dir, exist_ok=True)
    return data_dir


def get_db_path():
    explicit = os.environ.get("EFORMS_DB_PATH") or ""
    if explicit:
        return explicit
    return os.path.join(get_data_dir(), "eforms.db")
