"""
Integration Test Configuration

File-backed inputs for end-to-end reconciliation runs, plus CI handling:
when CI=true, tests marked slow are skipped.
"""

import json
import os

import pytest


@pytest.fixture
def is_ci_environment() -> bool:
    """True if the CI environment variable is set to 'true'."""
    return os.getenv("CI", "").lower() == "true"


@pytest.fixture(autouse=True)
def skip_slow_tests_in_ci(request, is_ci_environment):
    """Skip @pytest.mark.slow tests in CI."""
    if is_ci_environment and request.node.get_closest_marker("slow"):
        pytest.skip("Skipping slow test in CI environment")


@pytest.fixture
def catalog_file(tmp_path):
    """Catalog export in the column naming of a state course directory."""
    rows = [
        {"CourseCode": "1001310", "CourseName": "English 1", "Subject": "English"},
        {"CourseCode": "1001340", "CourseName": "English 2", "Subject": "English"},
        {"CourseCode": "1200310", "CourseName": "Algebra 1", "Subject": "Mathematics"},
        {"CourseCode": "1200330", "CourseName": "Algebra 2", "Subject": "Mathematics"},
        {"CourseCode": "2000310", "CourseName": "Biology 1", "Subject": "Science"},
        {"CourseCode": "2003340", "CourseName": "Chemistry 1", "Subject": "Science"},
        {"CourseCode": "0708340", "CourseName": "French 1", "Subject": "World Languages"},
        {"CourseName": "Retired course without a code"},
    ]
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(rows), encoding="utf-8")
    return path


@pytest.fixture
def records_file(tmp_path):
    """Extraction output for one school, with a compound entry and a duplicate."""
    courses = [
        {"id": "eng", "title": "English 1-2", "course_code": "-"},
        {"id": "alg", "name": "Algebra 1", "code": "1200-310"},
        {"id": "alg-h", "name": "Algebra 1 Honors", "code": "1200310H"},
        {"id": "bio", "name": "Intro to Biology", "description": "Cells and genetics"},
        {"id": "fr", "name": "French Language I", "code": "FR1"},
        {"id": "chem", "name": "General Chemistry", "grade": "11"},
        {"id": "bio-dup", "name": "Intro to Biology", "description": "Duplicate row"},
    ]
    path = tmp_path / "school-42.json"
    path.write_text(json.dumps({"courses": courses}), encoding="utf-8")
    return path
