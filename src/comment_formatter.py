"""
ClickUp Comment Formatter
=========================
Conversão bidirecional entre Markdown e o formato estruturado de comentários
do ClickUp: uma lista ordenada de blocos de texto, cada um com seus atributos
(negrito, itálico, sublinhado, tachado, código, link, cores).

- Markdown -> documento: usado ao criar/editar comentários
- Documento -> Markdown: usado ao ler comentários para exibição

As funções públicas são puras e totais: nunca lançam exceção. Em caso de
falha interna, degradam para texto puro (o comentário é entregue sem
formatação, mas é entregue).

Referência: https://developer.clickup.com/docs/comment-formatting
"""

import re
from typing import Optional, List, Dict, Any, Tuple, Iterable

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)
from loguru import logger

# ============================================================================
# TABELA DE MARCADORES
# ============================================================================

# Flags booleanas suportadas pelo ClickUp
FLAG_ATTRIBUTES: Tuple[str, ...] = ("bold", "italic", "underline", "strikethrough", "code")

# Marcadores inline simétricos, na ordem em que são testados em cada posição.
# "**" vem antes de "*" (casamento guloso da sequência de asteriscos).
INLINE_MARKERS: Tuple[Tuple[str, str], ...] = (
    ("**", "bold"),
    ("__", "underline"),
    ("~~", "strikethrough"),
    ("*", "italic"),
)

# Ordem de aplicação no caminho inverso, de dentro para fora.
# Código é sempre o mais interno; link é aplicado por último (mais externo).
MARKDOWN_WRAP_ORDER: Tuple[Tuple[str, str], ...] = (
    ("strikethrough", "~~"),
    ("underline", "__"),
    ("italic", "*"),
    ("bold", "**"),
)

BULLET = "• "
FENCE_MARKER = "```"

# URL sem espaços; aceita um nível de parênteses balanceados (ex.: Foo_(bar))
_URL_PATTERN = r"(?:[^()\s]|\([^()\s]*\))+"
_URL_RE = re.compile(_URL_PATTERN)
_LINK_RE = re.compile(r"\[([^\]\n]+)\]\((" + _URL_PATTERN + r")\)")
_HEADING_RE = re.compile(r"^(#+)\s+(.*)$")
_BULLET_RE = re.compile(r"^(\s*)[-*+]\s+(.*)$")
_QUOTE_RE = re.compile(r"^(>\s?)(.*)$")
_CLOSING_FENCE_RE = re.compile(r"^\s*(`{3,})\s*$")

# Escapes aplicados a URLs que o padrão acima não aceitaria
_URL_ESCAPES = str.maketrans({"(": "%28", ")": "%29", " ": "%20", "\t": "%09", "\n": "%0A"})

# Caracteres que indicam possível markdown (atalho para texto puro)
_MARKDOWN_HINT_RE = re.compile(r"[*_`~#\[\]()>+-]")


# ============================================================================
# MODELOS
# ============================================================================

class LinkAttribute(BaseModel):
    """Atributo de link no formato do ClickUp: {"url": "..."}."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str = Field(..., min_length=1)


class SegmentAttributes(BaseModel):
    """
    Conjunto fechado de atributos de um bloco de texto.

    Chaves desconhecidas vindas da API (ex.: "block-id", "list") são
    ignoradas explicitamente. Todas as flags são combináveis entre si.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    bold: bool = False
    italic: bool = False
    underline: bool = False
    strikethrough: bool = False
    code: bool = False
    link: Optional[LinkAttribute] = None
    color: Optional[str] = None
    background_color: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("background_color", "backgroundColor"),
    )

    @field_validator(*FLAG_ATTRIBUTES, mode="before")
    @classmethod
    def _none_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("link", mode="before")
    @classmethod
    def _coerce_link(cls, value: Any) -> Any:
        """Aceita o link como URL (string) ou como {"url": ...}."""
        if isinstance(value, str):
            return {"url": value} if value else None
        return value

    @property
    def is_plain(self) -> bool:
        """True se nenhum atributo está ativo."""
        return (
            not any(getattr(self, name) for name in FLAG_ATTRIBUTES)
            and self.link is None
            and not self.color
            and not self.background_color
        )

    def with_flag(self, name: str) -> "SegmentAttributes":
        """Retorna uma cópia com a flag `name` ativa."""
        return self.model_copy(update={name: True})

    def with_link(self, url: str) -> "SegmentAttributes":
        """Retorna uma cópia apontando para `url`."""
        return self.model_copy(update={"link": LinkAttribute(url=url)})

    def to_clickup(self) -> Dict[str, Any]:
        """Serializa apenas os atributos ativos, no formato da API."""
        data: Dict[str, Any] = {name: True for name in FLAG_ATTRIBUTES if getattr(self, name)}
        if self.link is not None:
            data["link"] = {"url": self.link.url}
        if self.color:
            data["color"] = self.color
        if self.background_color:
            data["background_color"] = self.background_color
        return data

    @classmethod
    def from_clickup(cls, raw: Any) -> "SegmentAttributes":
        """
        Lê atributos vindos da API.

        Chaves desconhecidas são descartadas; atributos inválidos resultam
        em bloco sem formatação.
        """
        if not isinstance(raw, dict) or not raw:
            return cls()

        unknown = set(raw) - KNOWN_ATTRIBUTE_KEYS
        if unknown:
            logger.debug(f"Atributos de comentário ignorados: {sorted(unknown)}")

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"Atributos inválidos, bloco tratado como texto puro: {e.error_count()} erro(s)")
            return cls()


KNOWN_ATTRIBUTE_KEYS = frozenset(FLAG_ATTRIBUTES + ("link", "color", "background_color", "backgroundColor"))

PLAIN = SegmentAttributes()


class TextSegment(BaseModel):
    """Trecho contínuo de texto com um único conjunto de atributos."""
    model_config = ConfigDict(frozen=True)

    text: str
    attributes: SegmentAttributes = Field(default_factory=SegmentAttributes)

    def to_clickup(self) -> Dict[str, Any]:
        return {"text": self.text, "attributes": self.attributes.to_clickup()}


class CommentDocument(BaseModel):
    """
    Comentário estruturado: sequência ordenada de segmentos.

    A ordem é a ordem de leitura. Concatenar os textos reproduz a leitura
    sem formatação do comentário.
    """
    segments: List[TextSegment] = Field(default_factory=list)

    @property
    def plain_text(self) -> str:
        return "".join(segment.text for segment in self.segments)

    def to_clickup(self) -> Dict[str, List[Dict[str, Any]]]:
        """Formato da API: {"comment": [{"text", "attributes"}, ...]}."""
        return {"comment": [segment.to_clickup() for segment in self.segments]}

    @classmethod
    def from_clickup(cls, payload: Any) -> "CommentDocument":
        """
        Constrói um documento a partir da resposta da API.

        Aceita {"comment": [...]}, uma lista de blocos ou um documento.
        Blocos sem texto (menções, embeds) são ignorados.
        """
        if isinstance(payload, CommentDocument):
            return payload

        blocks = payload.get("comment") if isinstance(payload, dict) else payload
        if not isinstance(blocks, list):
            return cls()

        segments: List[TextSegment] = []
        for block in blocks:
            if isinstance(block, TextSegment):
                segments.append(block)
                continue
            if not isinstance(block, dict):
                continue
            text = block.get("text")
            if not isinstance(text, str) or not text:
                continue
            segments.append(TextSegment(
                text=text,
                attributes=SegmentAttributes.from_clickup(block.get("attributes"))
            ))

        return cls(segments=merge_segments(segments))


# ============================================================================
# FUNÇÕES AUXILIARES
# ============================================================================

def merge_segments(segments: Iterable[TextSegment]) -> List[TextSegment]:
    """Descarta segmentos vazios e funde vizinhos com atributos idênticos."""
    merged: List[TextSegment] = []
    for segment in segments:
        if not segment.text:
            continue
        if merged and merged[-1].attributes == segment.attributes:
            previous = merged.pop()
            segment = TextSegment(text=previous.text + segment.text, attributes=segment.attributes)
        merged.append(segment)
    return merged


def _plain_document(text: str) -> CommentDocument:
    if not text:
        return CommentDocument()
    return CommentDocument(segments=[TextSegment(text=text)])


def _run_length(text: str, start: int, char: str, limit: int) -> int:
    end = start
    while end < limit and text[end] == char:
        end += 1
    return end - start


def _find_closing(text: str, marker: str, start: int) -> int:
    """
    Procura o fechamento de `marker` cujo conteúdo começa em `start`.

    O conteúdo precisa ser não vazio e estar na mesma linha. Se o fechamento
    faz parte de uma sequência maior do mesmo caractere (ex.: "***"), usa o
    último delimitador da sequência. Para marcador simples ("*"), uma
    sequência dupla é abertura de negrito e não fecha.

    Returns:
        Índice do delimitador de fechamento ou -1
    """
    newline = text.find("\n", start)
    limit = len(text) if newline == -1 else newline
    char = marker[0]

    position = text.find(marker, start + 1)
    while position != -1 and position + len(marker) <= limit:
        run = _run_length(text, position, char, limit)
        if not (len(marker) == 1 and run == 2):
            return position + run - len(marker)
        position = text.find(marker, position + run)
    return -1


def _find_code_closing(text: str, start: int, fence_len: int) -> int:
    """Procura uma sequência de exatamente `fence_len` crases na mesma linha."""
    newline = text.find("\n", start)
    limit = len(text) if newline == -1 else newline

    position = text.find("`", start + 1)
    while position != -1 and position < limit:
        run = _run_length(text, position, "`", limit)
        if run == fence_len:
            return position
        position = text.find("`", position + run)
    return -1


# ============================================================================
# MARKDOWN -> DOCUMENTO
# ============================================================================

def _parse_span(text: str, attributes: SegmentAttributes, out: List[TextSegment]) -> None:
    """Scanner inline: esquerda para direita, sem sobreposição."""
    buffer: List[str] = []

    def flush() -> None:
        if buffer:
            out.append(TextSegment(text="".join(buffer), attributes=attributes))
            buffer.clear()

    i = 0
    length = len(text)
    while i < length:
        char = text[i]

        # Código inline: conteúdo literal, sem parsing interno
        if char == "`":
            fence_len = _run_length(text, i, "`", length)
            closing = _find_code_closing(text, i + fence_len - 1, fence_len)
            if closing == -1:
                buffer.append(text[i:i + fence_len])
                i += fence_len
            else:
                flush()
                content = text[i + fence_len:closing]
                # Espaço de preenchimento ao redor de crases (` `` `) não faz parte do código
                if len(content) > 2 and content[0] == " " and content[-1] == " " and content.strip(" "):
                    content = content[1:-1]
                out.append(TextSegment(text=content, attributes=attributes.with_flag("code")))
                i = closing + fence_len
            continue

        # Link: o rótulo herda os estilos externos
        if char == "[":
            match = _LINK_RE.match(text, i)
            if match:
                flush()
                _parse_span(match.group(1), attributes.with_link(match.group(2)), out)
                i = match.end()
                continue

        for marker, flag in INLINE_MARKERS:
            if not text.startswith(marker, i):
                continue
            content_start = i + len(marker)
            closing = _find_closing(text, marker, content_start)
            if closing == -1:
                # Sem fechamento: o marcador é texto literal
                buffer.append(marker)
                i = content_start
            else:
                flush()
                _parse_span(text[content_start:closing], attributes.with_flag(flag), out)
                i = closing + len(marker)
            break
        else:
            buffer.append(char)
            i += 1

    flush()


def parse_inline(text: str, attributes: Optional[SegmentAttributes] = None) -> List[TextSegment]:
    """
    Converte formatação inline (negrito, itálico, código, links...) em segmentos.

    Args:
        text: Texto de uma linha
        attributes: Atributos herdados (ex.: negrito para títulos)

    Returns:
        Segmentos já fundidos, sem textos vazios
    """
    segments: List[TextSegment] = []
    _parse_span(text, attributes or PLAIN, segments)
    return merge_segments(segments)


def _parse_line(line: str) -> List[TextSegment]:
    heading = _HEADING_RE.match(line)
    if heading:
        # ClickUp não tem atributo de título: vira negrito
        return parse_inline(heading.group(2), PLAIN.with_flag("bold"))

    bullet = _BULLET_RE.match(line)
    if bullet:
        return [TextSegment(text=bullet.group(1) + BULLET)] + parse_inline(bullet.group(2))

    quote = _QUOTE_RE.match(line)
    if quote:
        return [TextSegment(text=quote.group(1))] + parse_inline(quote.group(2))

    return parse_inline(line)


def _fence_length(line: str) -> int:
    """
    Tamanho da cerca de abertura (``` opcionalmente seguido da linguagem), ou 0.

    A linguagem não pode conter crases: "```x```" numa linha é código inline.
    """
    stripped = line.strip()
    if not stripped.startswith(FENCE_MARKER):
        return 0
    length = _run_length(stripped, 0, "`", len(stripped))
    return 0 if "`" in stripped[length:] else length


def _is_closing_fence(line: str, length: int) -> bool:
    """Fecha a cerca apenas uma linha só de crases, com pelo menos `length` delas."""
    match = _CLOSING_FENCE_RE.match(line)
    return match is not None and len(match.group(1)) >= length


def _parse_blocks(markdown: str) -> List[TextSegment]:
    lines = markdown.split("\n")
    code = PLAIN.with_flag("code")
    segments: List[TextSegment] = []

    index = 0
    while index < len(lines):
        if index > 0:
            segments.append(TextSegment(text="\n"))

        line = lines[index]
        fence = _fence_length(line)
        if fence:
            code_lines: List[str] = []
            index += 1
            while index < len(lines) and not _is_closing_fence(lines[index], fence):
                code_lines.append(lines[index])
                index += 1
            # Pula a cerca de fechamento; cerca não fechada vai até o fim
            index += 1
            segments.append(TextSegment(text="\n".join(code_lines), attributes=code))
            continue

        segments.extend(_parse_line(line))
        index += 1

    return segments


def markdown_to_document(markdown: Any) -> CommentDocument:
    """
    Converte markdown para o formato estruturado de comentários do ClickUp.

    Suporta: **negrito**, *itálico*, __sublinhado__, ~~tachado~~, `código`,
    [links](url), títulos (viram negrito), listas (viram "• "), citações
    (o "> " é mantido como texto) e blocos de código com ```.

    Marcadores sem fechamento são mantidos como texto literal. Nunca lança
    exceção: no pior caso retorna o texto inteiro como um único segmento.

    Args:
        markdown: Texto em markdown

    Returns:
        CommentDocument com os segmentos na ordem de leitura
    """
    if not isinstance(markdown, str) or not markdown:
        return CommentDocument()

    try:
        return CommentDocument(segments=merge_segments(_parse_blocks(markdown)))
    except Exception as e:
        logger.warning(f"Falha ao converter markdown, usando texto puro: {type(e).__name__}: {e}")
        return _plain_document(markdown)


# ============================================================================
# DOCUMENTO -> MARKDOWN
# ============================================================================

def _wrap_code(text: str) -> str:
    longest = 0
    for run in re.findall(r"`+", text):
        longest = max(longest, len(run))
    fence = "`" * (longest + 1)
    # Crase ou espaço nas pontas: preenche com um espaço de cada lado (removido no parse)
    if text[:1] == "`" or text[-1:] == "`" or (text[:1] == " " and text[-1:] == " " and text.strip(" ")):
        text = f" {text} "
    return f"{fence}{text}{fence}"


def _fence_block(text: str) -> str:
    """Bloco de código multilinha; a cerca é maior que qualquer linha só de crases do conteúdo."""
    longest = 0
    for line in text.split("\n"):
        match = _CLOSING_FENCE_RE.match(line)
        if match:
            longest = max(longest, len(match.group(1)))
    fence = "`" * max(len(FENCE_MARKER), longest + 1)
    return f"{fence}\n{text}\n{fence}"


def _is_code_block(segment: TextSegment) -> bool:
    return segment.attributes.code and "\n" in segment.text


def _safe_url(url: str) -> str:
    return url if _URL_RE.fullmatch(url) else url.translate(_URL_ESCAPES)


def _wrap(text: str, attributes: SegmentAttributes) -> str:
    if attributes.code:
        text = _wrap_code(text)
    for flag, marker in MARKDOWN_WRAP_ORDER:
        if getattr(attributes, flag):
            text = f"{marker}{text}{marker}"
    if attributes.link is not None:
        text = f"[{text}]({_safe_url(attributes.link.url)})"
    return text


def _segment_to_markdown(segment: TextSegment) -> str:
    text = segment.text
    attributes = segment.attributes

    if attributes.is_plain:
        return text

    if _is_code_block(segment):
        # Demais atributos não cabem numa cerca
        return _fence_block(text)

    if "\n" in text:
        # Marcadores inline não atravessam linhas: formata linha a linha
        return "\n".join(
            _wrap(line, attributes) if line.strip() else line
            for line in text.split("\n")
        )

    return _wrap(text, attributes)


def _render_segments(segments: List[TextSegment]) -> str:
    parts: List[str] = []
    for index, segment in enumerate(segments):
        rendered = _segment_to_markdown(segment)
        if _is_code_block(segment):
            # A cerca precisa ocupar linhas próprias
            if parts and not parts[-1].endswith("\n"):
                rendered = "\n" + rendered
            following = segments[index + 1] if index + 1 < len(segments) else None
            if following is not None and not following.text.startswith("\n"):
                rendered += "\n"
        parts.append(rendered)
    return "".join(parts)


def _collect_texts(document: Any) -> str:
    """Fallback: concatena os textos disponíveis, sem formatação."""
    if isinstance(document, CommentDocument):
        return document.plain_text
    blocks = document.get("comment") if isinstance(document, dict) else document
    if not isinstance(blocks, list):
        return ""
    texts = []
    for block in blocks:
        text = block.get("text") if isinstance(block, dict) else getattr(block, "text", None)
        if isinstance(text, str):
            texts.append(text)
    return "".join(texts)


def document_to_markdown(document: Any) -> str:
    """
    Converte um comentário estruturado do ClickUp de volta para markdown.

    Aceita CommentDocument, {"comment": [...]} ou lista de blocos. Atributos
    são aplicados de fora para dentro: link, negrito, itálico, sublinhado,
    tachado, código. Código fica sempre mais interno e os outros marcadores
    envolvem o trecho de código (ex.: **`x`**).

    Args:
        document: Comentário estruturado

    Returns:
        Markdown (string vazia para entrada nula ou inválida)
    """
    if document is None:
        return ""

    try:
        parsed = CommentDocument.from_clickup(document)
        return _render_segments(parsed.segments)
    except Exception as e:
        logger.warning(f"Falha ao converter comentário para markdown: {type(e).__name__}: {e}")
        try:
            return _collect_texts(document)
        except Exception:
            return ""


# ============================================================================
# SUBMISSÃO
# ============================================================================

def prepare_comment_for_clickup(content: Any) -> Dict[str, Any]:
    """
    Prepara o conteúdo de um comentário para envio à API do ClickUp.

    Gera o formato estruturado ("comment") e mantém o texto original em
    "comment_text" como fallback de compatibilidade. Nunca lança exceção:
    se a conversão falhar, envia o texto original como um único bloco.

    Args:
        content: Texto do comentário (markdown ou texto puro)

    Returns:
        Dict com "comment" (lista de blocos) e "comment_text"
    """
    if not isinstance(content, str):
        content = "" if content is None else str(content)

    try:
        if _MARKDOWN_HINT_RE.search(content):
            document = markdown_to_document(content)
        else:
            document = _plain_document(content)
        blocks = document.to_clickup()["comment"]
    except Exception as e:
        logger.warning(f"Falha ao preparar comentário, enviando texto puro: {type(e).__name__}: {e}")
        blocks = [{"text": content, "attributes": {}}] if content else []

    return {"comment": blocks, "comment_text": content}


# ============================================================================
# CONSTRUTORES
# ============================================================================

def _single(text: str, attributes: SegmentAttributes) -> CommentDocument:
    if not text:
        return CommentDocument()
    return CommentDocument(segments=[TextSegment(text=text, attributes=attributes)])


def create_plain_text_comment(text: str) -> CommentDocument:
    return _single(text, PLAIN)


def create_bold_comment(text: str) -> CommentDocument:
    return _single(text, PLAIN.with_flag("bold"))


def create_italic_comment(text: str) -> CommentDocument:
    return _single(text, PLAIN.with_flag("italic"))


def create_code_comment(text: str) -> CommentDocument:
    return _single(text, PLAIN.with_flag("code"))


def create_link_comment(text: str, url: str) -> CommentDocument:
    """Comentário com um único link; sem URL vira texto puro."""
    if not url:
        return _single(text, PLAIN)
    return _single(text, PLAIN.with_link(url))


def combine_comment_blocks(blocks: Iterable[Any]) -> CommentDocument:
    """Junta blocos (TextSegment ou dicts da API) num único documento."""
    return CommentDocument.from_clickup(list(blocks))
