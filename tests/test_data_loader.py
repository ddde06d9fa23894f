"""
Tests for loading per-test question files.
"""
import json

import pytest

from alcpt.core.errors import ValidationError
from alcpt.services import data_loader, store


def write_exam(directory, filename, test_number="070", count=3, **extra):
    directory.mkdir(parents=True, exist_ok=True)
    questions = [
        {"question_text": f"Question {i}?", "correct_answer": "yes", "other_options": ["no", "maybe", "never"]}
        for i in range(count)
    ]
    path = directory / filename
    path.write_text(json.dumps({"test_number": test_number, "questions": questions, **extra}), encoding="utf-8")
    return path


class TestListing:
    def test_sorted_json_files_only(self, tmp_path):
        write_exam(tmp_path, "test_b.json", "002")
        write_exam(tmp_path, "test_a.json", "001")
        (tmp_path / "notes.txt").write_text("ignore me")

        assert data_loader.list_test_files(tmp_path) == ["test_a.json", "test_b.json"]

    def test_missing_directory(self, tmp_path):
        assert data_loader.list_test_files(tmp_path / "nowhere") == []


class TestLoading:
    @pytest.mark.asyncio
    async def test_creates_test_and_questions(self, db, tmp_path):
        path = write_exam(tmp_path, "test_070.json", name="ALCPT Form 070", duration_minutes=75)

        outcome = await data_loader.load_test_file(db, path)

        assert outcome.loaded is True
        assert outcome.question_count == 3
        test = await store.get_test_by_number(db, "070")
        assert test.name == "ALCPT Form 070"
        assert test.duration_minutes == 75
        assert test.total_questions == 3
        questions = await store.get_questions_by_test(db, test.id)
        assert [q.question_index for q in questions] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_default_name(self, db, tmp_path):
        path = write_exam(tmp_path, "test_071.json", test_number="071")
        await data_loader.load_test_file(db, path)
        test = await store.get_test_by_number(db, "071")
        assert test.name == "ALCPT Test 071"

    @pytest.mark.asyncio
    async def test_loading_twice_is_a_no_op(self, db, tmp_path):
        write_exam(tmp_path, "test_070.json")

        first = await data_loader.load_all(db, tmp_path)
        second = await data_loader.load_all(db, tmp_path)

        assert [o.loaded for o in first] == [True]
        assert [o.loaded for o in second] == [False]
        test = await store.get_test_by_number(db, "070")
        assert await store.count_questions(db, test.id) == 3

    @pytest.mark.asyncio
    async def test_explicit_question_index(self, db, tmp_path):
        tmp_path.mkdir(exist_ok=True)
        path = tmp_path / "test_072.json"
        path.write_text(json.dumps({
            "test_number": "072",
            "questions": [{"question_index": 80, "question_text": "Pick one.", "correct_answer": "a",
                           "other_options": ["b", "c", "d"]}],
        }), encoding="utf-8")

        await data_loader.load_test_file(db, path)

        test = await store.get_test_by_number(db, "072")
        [question] = await store.get_questions_by_test(db, test.id)
        assert question.question_index == 80
        assert question.question_type == "reading"

    @pytest.mark.asyncio
    async def test_wrong_option_count_rejected(self, db, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({
            "test_number": "073",
            "questions": [{"question_text": "Q?", "correct_answer": "a", "other_options": ["b", "c"]}],
        }), encoding="utf-8")

        with pytest.raises(ValidationError):
            await data_loader.load_test_file(db, path)

    @pytest.mark.asyncio
    async def test_invalid_json_rejected(self, db, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ValidationError, match="broken.json"):
            await data_loader.load_test_file(db, path)
