"""
Classifier tests over English and Chinese review text.
"""

from review.classifiers import (
    extract_bug_candidates,
    has_bug_vocabulary,
    is_meta_summary,
    looks_like_bug_narrative,
)


def test_meta_summary_detection():
    assert is_meta_summary("")
    assert is_meta_summary("Waiting for your approval to run the test command.")
    assert is_meta_summary("I need permission to execute the sandbox command.")
    assert is_meta_summary("等待您的批准后我将运行测试。")
    assert is_meta_summary("Awaiting sandbox approval.")
    assert is_meta_summary("Findings are pending verification.")
    long_waiting = ("The change touches the parser. " * 20) + "Once you approve the command I will verify it."
    assert is_meta_summary(long_waiting)


def test_real_reviews_are_not_meta():
    assert not is_meta_summary("LGTM")
    assert not is_meta_summary("The change is correct. add() now validates its inputs and the tests cover it.")
    assert not is_meta_summary("Verified in the sandbox: the new test passes.")
    assert not is_meta_summary("LGTM. Approved.")
    assert not is_meta_summary("No blocking issues; approving this PR.")
    assert not is_meta_summary("The permission check in auth.py is now correct.")
    long_review = "## Summary\n" + ("The refactor keeps behaviour identical. " * 20)
    assert not is_meta_summary(long_review)


def test_bug_vocabulary_ignores_negations():
    assert has_bug_vocabulary("add() has an off-by-one error")
    assert has_bug_vocabulary("这里会导致空指针异常")
    assert not has_bug_vocabulary("LGTM")
    assert not has_bug_vocabulary("No bugs found.")
    assert not has_bug_vocabulary("未发现任何问题")


def test_bug_narrative():
    assert looks_like_bug_narrative("I found two bugs in the parser and one in the writer.")
    assert looks_like_bug_narrative("Calling add() with None will crash the service.")
    assert not looks_like_bug_narrative("The error message wording was improved.")


def test_candidates_prefer_bullets():
    text = (
        "## Findings\n"
        "- add() returns a - b, which is wrong for every caller\n"
        "- Renamed a variable\n"
        "1. parse() raises TypeError on empty input\n"
    )
    assert extract_bug_candidates(text) == [
        "add() returns a - b, which is wrong for every caller",
        "parse() raises TypeError on empty input",
    ]


def test_candidates_fall_back_to_sentences_and_clauses():
    sentences = "The loop has an off-by-one error; the cache leaks memory on reload. Style is fine"
    assert extract_bug_candidates(sentences) == [
        "The loop has an off-by-one error",
        "the cache leaks memory on reload. Style is fine",
    ]
    clauses = "Mostly fine, but the writer has a race condition, and naming is inconsistent"
    assert extract_bug_candidates(clauses) == ["but the writer has a race condition"]


def test_candidates_are_capped():
    text = "\n".join(f"- bug number {i} crashes the parser" for i in range(10))
    assert len(extract_bug_candidates(text, max_candidates=3)) == 3
    assert extract_bug_candidates("LGTM") == []
