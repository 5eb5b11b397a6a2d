"""
Basic smoke tests: every package imports and the entry points are wired.
"""


def test_packages_import():
    import llm
    import tools
    import web
    from agent.steps import StepDriver
    from review.orchestrator import ReviewOrchestrator

    assert callable(StepDriver)
    assert callable(ReviewOrchestrator)
    assert callable(llm.create_model_service)
    assert "suggest_change" in tools.build_review_registry()
    assert web.app.title


def test_entry_points():
    import main
    from web import cli

    assert callable(main.main)
    assert callable(cli.main)
