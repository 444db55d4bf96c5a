from collections import namedtuple

IdDiff = namedtuple("IdDiff", ["to_add", "to_remove", "to_keep"])


def diff_ids(existing, desired):
    """Split two id collections into what to add, remove and keep.

    ``to_add`` and ``to_keep`` follow the order of ``desired``; ``to_remove``
    follows the order of ``existing``. An id present on both sides is always
    kept, never removed and re-added. Duplicates are collapsed.
    """
    existing = list(dict.fromkeys(existing or []))
    desired = list(dict.fromkeys(desired or []))
    existing_set = set(existing)
    desired_set = set(desired)
    return IdDiff(
        to_add=[i for i in desired if i not in existing_set],
        to_remove=[i for i in existing if i not in desired_set],
        to_keep=[i for i in desired if i in existing_set],
    )
