"""
Fixtures para testes do MCP de comentários do ClickUp.
"""
import pytest


@pytest.fixture
def mock_structured_comment():
    """Comentário no formato estruturado, como retornado pela API."""
    return [
        {"text": "Status", "attributes": {"bold": True}},
        {"text": "\n", "attributes": {"block-id": "block-1"}},
        {"text": "Revisar o ", "attributes": {}},
        {"text": "contrato", "attributes": {"italic": True}},
        {"text": " em ", "attributes": {}},
        {"text": "docs", "attributes": {"link": "https://docs.example.com"}},
    ]


@pytest.fixture
def mock_comment(mock_structured_comment):
    """Comentário completo de exemplo."""
    return {
        "id": "90110000001",
        "comment": mock_structured_comment,
        "comment_text": "Status\nRevisar o contrato em docs",
        "user": {"id": 1, "username": "joao", "email": "joao@example.com"},
        "resolved": False,
        "assignee": None,
        "reactions": [],
        "date": "1704153600000",
        "reply_count": 2
    }


@pytest.fixture
def mock_comments(mock_comment):
    """Lista de comentários para testes."""
    second = dict(mock_comment)
    second.update({
        "id": "90110000002",
        "comment": [{"text": "Revisão concluída, aguardando aprovação", "attributes": {}}],
        "comment_text": "Revisão concluída, aguardando aprovação",
        "user": {"id": 2, "username": "maria"},
        "resolved": True,
        "date": "1704240000000",
        "reply_count": 0
    })
    return [mock_comment, second]


@pytest.fixture
def status_update_markdown():
    """Markdown de exemplo com vários recursos."""
    return (
        "# Status Update\n"
        "\n"
        "## Completed\n"
        "- **Authentication** system\n"
        "- *Database* setup\n"
        "\n"
        "## Code\n"
        "```javascript\n"
        "const user = { name: 'John' };\n"
        "```\n"
        "\n"
        "Visit [ClickUp](https://clickup.com) for more info."
    )
