from __future__ import annotations

from typing import Any, Sequence

from fichamento.services.chat.aggregator import UPDATE_FICHAMENTO
from fichamento.services.chat.types import Book, ChatMessage, Summary

_FIELD_LABELS: tuple[tuple[str, str], ...] = (
    ("reference", "Referência"),
    ("thesis", "Tese Central"),
    ("key_ideas", "Ideias-força"),
    ("citations", "Citações"),
    ("counterpoints", "Contra-argumentos"),
    ("applications", "Aplicações"),
    ("vocabulary", "Vocabulário"),
    ("bibliography", "Bibliografia"),
)

_FIELD_DESCRIPTIONS: dict[str, str] = {
    "reference": "Referência bibliográfica completa do livro",
    "thesis": "Tese ou argumento central do livro",
    "key_ideas": "Principais ideias e conceitos-chave",
    "citations": "Citações e evidências importantes",
    "counterpoints": "Contra-argumentos ou críticas",
    "applications": "Aplicações práticas das ideias",
    "vocabulary": "Termos e vocabulário importante",
    "bibliography": "Bibliografia e referências citadas",
}

UPDATE_FICHAMENTO_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": UPDATE_FICHAMENTO,
        "description": (
            "Atualiza o fichamento estruturado do livro com novas informações extraídas "
            "da conversa. Use quando o usuário mencionar informações relevantes."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                name: {"type": "string", "description": description}
                for name, description in _FIELD_DESCRIPTIONS.items()
            },
            "additionalProperties": False,
        },
    },
}


def summary_context(summary: Summary | None) -> str:
    if summary is None:
        return "Nenhum fichamento ainda."

    lines = ["Fichamento atual:"]
    for name, label in _FIELD_LABELS:
        lines.append(f"- {label}: {getattr(summary, name) or 'N/A'}")
    return "\n".join(lines)


def build_system_prompt(book: Book, summary: Summary | None) -> str:
    subject_line = f"Assunto: {book.subject}" if book.subject else ""
    return (
        "Você é um assistente especializado em ajudar leitores a consolidar aprendizados "
        "sobre livros.\n"
        "\n"
        f'Livro atual: "{book.title}" de {book.author}\n'
        f"{subject_line}\n"
        "\n"
        f"{summary_context(summary)}\n"
        "\n"
        "Seu trabalho é:\n"
        "1. Responder de forma útil e engajadora às reflexões do usuário\n"
        "2. Fazer perguntas que aprofundem o entendimento\n"
        "3. Identificar informações importantes para o fichamento\n"
        "\n"
        "Seja conversacional, empático e ajude o usuário a extrair insights valiosos do livro."
    )


def conversation_context(history: Sequence[ChatMessage]) -> str:
    return "\n".join(
        f"{'Usuário' if message.role == 'user' else 'Assistente'}: {message.content}"
        for message in history
    )


def build_messages(history: Sequence[ChatMessage], user_message: str) -> list[dict[str, str]]:
    return [
        {
            "role": "user",
            "content": (
                f"Histórico recente:\n{conversation_context(history)}\n\n"
                f"Nova mensagem: {user_message}"
            ),
        }
    ]
