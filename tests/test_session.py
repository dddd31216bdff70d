import pytest

from book_echoes.graph.graph import progress_frame
from book_echoes.graph.session import DeepSearchSession, SessionStateError
from book_echoes.models import BookInfo


def drafted_session():
    session = DeepSearchSession()
    session.start("城市与记忆")
    session.apply_frame(progress_frame("keywords", "正在生成检索关键词...", "running"))
    session.apply_frame(progress_frame("keywords", "生成了 1 个检索关键词", "completed"))
    session.apply_frame(
        {
            "type": "draft-start",
            "keywords": [{"keyword": "城市记忆", "reason": "", "priority": "high"}],
            "searchSnippets": [{"title": "t", "url": "u", "snippet": "s", "source": "jina"}],
            "userInput": "城市与记忆",
        }
    )
    session.apply_frame({"type": "draft-chunk", "content": "# 草稿"})
    assert session.phase == "draft-streaming"
    session.apply_frame({"type": "draft-chunk", "content": "\n正文"})
    session.apply_frame(progress_frame("cross-analysis", "交叉分析完成", "completed"))
    session.apply_frame({"type": "draft-complete", "success": True, "draftMarkdown": "# 草稿\n正文\n", "articleAnalysis": "分析"})
    return session


def test_full_flow_to_completed():
    session = drafted_session()
    assert session.phase == "draft-confirm"
    assert session.draft_markdown == "# 草稿\n正文"
    assert [e.phase for e in session.progress_log] == ["keywords", "cross-analysis"]
    assert session.progress["keywords"].status == "completed"
    assert session.keywords[0].keyword == "城市记忆"

    session.edit_draft("# 修改后的草稿")
    assert session.confirm() == "# 修改后的草稿"
    assert session.phase == "book-search"

    session.receive_books(
        [
            BookInfo(id="1", title="看不见的城市", similarity_score=0.8),
            BookInfo(id="2", title="城市与记忆", similarity_score=0.3),
        ]
    )
    assert [b.id for b in session.select_books()] == ["1"]
    assert [b.id for b in session.select_books(["2"])] == ["2"]

    session.start_report()
    session.append_report("导读")
    session.append_report("正文")
    session.complete()
    assert session.phase == "completed"
    assert session.report == "导读正文"


def test_error_frame_is_absorbing_until_cancel():
    session = DeepSearchSession()
    session.start("x")
    session.apply_frame(progress_frame("error", "深度检索分析失败", "error", "boom"))
    assert session.phase == "error"
    assert session.error == "boom"
    with pytest.raises(SessionStateError):
        session.apply_frame({"type": "draft-chunk", "content": "late"})
    session.cancel()
    assert session.phase == "idle"
    assert session.user_input == ""


def test_regenerate_keeps_input_and_clears_run():
    session = drafted_session()
    assert session.regenerate() == "城市与记忆"
    assert session.phase == "progress"
    assert session.draft_markdown == ""
    assert session.progress == {}


def test_illegal_transitions_raise():
    session = DeepSearchSession()
    with pytest.raises(SessionStateError):
        session.confirm()
    with pytest.raises(SessionStateError):
        session.start("   ")

    session = drafted_session()
    session.confirm()
    session.receive_books([BookInfo(id="1", title="a", similarity_score=0.1)])
    session.select_books()
    with pytest.raises(SessionStateError):
        session.start_report()
    with pytest.raises(SessionStateError):
        session.edit_draft("too late")
