# tests/test_database_manager.py
import pytest

from classbook.modules.database_manager import MAX_BATCH_OPERATIONS, DatabaseManager, Where
from classbook.modules.errors import BatchLimitError, DocumentNotFoundError


def test_set_get_and_merge(db):
    db.set('s', 'users', 'u1', {'first_name': 'Ana', 'role': 'student'})
    assert db.get('s', 'users', 'u1') == {'id': 'u1', 'first_name': 'Ana', 'role': 'student'}

    db.set('s', 'users', 'u1', {'last_name': 'Petrova'}, merge=True)
    assert db.get('s', 'users', 'u1')['first_name'] == 'Ana'
    assert db.get('s', 'users', 'u1')['last_name'] == 'Petrova'

    db.set('s', 'users', 'u1', {'last_name': 'Petrova'})
    assert 'first_name' not in db.get('s', 'users', 'u1')


def test_documents_are_scoped_by_school_and_collection(db):
    db.set('a', 'users', 'u1', {'role': 'student'})
    assert db.get('b', 'users', 'u1') is None
    assert db.get('a', 'users/u1/notifications', 'u1') is None
    assert db.get('a', 'users', '') is None


def test_update_missing_document_raises(db):
    with pytest.raises(DocumentNotFoundError):
        db.update('s', 'users', 'ghost', {'role': 'admin'})


def test_delete_is_idempotent(db):
    doc_id = db.add('s', 'classes', {'class_name': '9B'})
    db.delete('s', 'classes', doc_id)
    db.delete('s', 'classes', doc_id)
    assert db.get('s', 'classes', doc_id) is None


def test_query_predicates(db):
    db.set('s', 'users', 'p1', {'role': 'parent', 'children_ids': ['c1', 'c2']})
    db.set('s', 'users', 'p2', {'role': 'parent', 'children_ids': ['c3']})
    db.set('s', 'users', 't1', {'role': 'teacher'})

    ids = lambda docs: sorted(doc['id'] for doc in docs)

    assert ids(db.query('s', 'users', Where('children_ids', 'array-contains', 'c2'))) == ['p1']
    assert ids(db.query('s', 'users', Where('role', 'in', ['teacher', 'admin']))) == ['t1']
    assert ids(db.query('s', 'users', Where('role', '!=', 'parent'))) == ['t1']
    # a missing field never matches, not even "!="
    assert ids(db.query('s', 'users', Where('children_ids', '!=', ['c3']))) == ['p1']


def test_query_range_order_and_limit(db):
    for day in ('2025-03-05', '2025-03-03', '2025-03-04'):
        db.add('s', 'attendance', {'date': day})
    db.add('s', 'attendance', {'status': 'present'})

    docs = db.query('s', 'attendance', Where('date', '>=', '2025-03-04'), order_by='date')
    assert [d['date'] for d in docs] == ['2025-03-04', '2025-03-05']

    docs = db.query('s', 'attendance', order_by='date', descending=True, limit=3)
    assert [d.get('date') for d in docs] == ['2025-03-05', '2025-03-04', '2025-03-03']

    # documents without the sort field go last
    assert db.query('s', 'attendance', order_by='date')[-1]['status'] == 'present'
    assert db.count('s', 'attendance', Where('date', '<', '2025-03-04')) == 1


def test_unsupported_operator():
    with pytest.raises(ValueError):
        Where('role', 'like', 'x')


def test_batch_commits_atomically(db):
    db.set('s', 'users', 'u1', {'role': 'student'})

    batch = db.batch()
    batch.set('s', 'users', 'u2', {'role': 'student'})
    batch.update('s', 'users', 'missing', {'role': 'admin'})
    with pytest.raises(DocumentNotFoundError):
        batch.commit()

    assert db.get('s', 'users', 'u2') is None

    batch = db.batch()
    batch.set('s', 'users', 'u2', {'role': 'student'}).update('s', 'users', 'u1', {'role': 'teacher'})
    assert len(batch) == 2
    assert batch.commit() == 2
    assert db.get('s', 'users', 'u1')['role'] == 'teacher'
    assert len(batch) == 0


def test_batch_limit(db):
    batch = db.batch()
    for index in range(MAX_BATCH_OPERATIONS + 1):
        batch.set('s', 'users', f"u{index}", {'role': 'student'})

    with pytest.raises(BatchLimitError):
        batch.commit()
    assert db.count('s', 'users') == 0


def test_file_database_persists(tmp_path):
    path = tmp_path / 'store' / 'classbook.db'
    first = DatabaseManager(path)
    first.set('s', 'subjects', 'math', {'name': 'Mathematics'})
    first.close_all_connections()

    second = DatabaseManager(path)
    assert second.get('s', 'subjects', 'math')['name'] == 'Mathematics'
    second.close_all_connections()
