#!/usr/bin/env python3
"""
ClickUp Comments MCP Server
===========================
Servidor MCP para comentários do ClickUp com suporte a markdown, permitindo:
- Criar, editar, resolver e deletar comentários de Tasks, Lists e Chat Views
- Respostas em thread (threaded comments)
- Conversão automática markdown <-> formato estruturado do ClickUp
- Leitura dos comentários já convertidos para markdown
- Busca aproximada (fuzzy) em comentários
- Pré-visualização do formato que será enviado à API

Versão: 1.0.0
"""

import os
import json
import httpx
import asyncio
import contextvars
import uuid
import statistics
from datetime import datetime
from time import perf_counter
from contextlib import contextmanager
from typing import Optional, List, Dict, Any
from enum import Enum
from collections import defaultdict
from pydantic import BaseModel, Field, ConfigDict, field_validator
from mcp.server.fastmcp import FastMCP
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from cachetools import TTLCache
from rapidfuzz import fuzz, process
from loguru import logger
import sys

from comment_formatter import (
    CommentDocument,
    document_to_markdown,
    prepare_comment_for_clickup,
)

# ============================================================================
# CONFIGURAÇÃO
# ============================================================================

API_BASE_URL = "https://api.clickup.com/api/v2"
API_TOKEN = os.environ.get("CLICKUP_API_TOKEN", "")
DEFAULT_TIMEOUT = float(os.environ.get("DEFAULT_TIMEOUT", "30.0"))
CACHE_TTL_COMMENTS = int(os.environ.get("CACHE_TTL_COMMENTS", "30"))  # comentários mudam rápido
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# Rate limiting (ClickUp: 100 req/min no plano Free Forever)
RATE_LIMIT_REQUESTS = int(os.environ.get("RATE_LIMIT_REQUESTS", "100"))
RATE_LIMIT_WINDOW = int(os.environ.get("RATE_LIMIT_WINDOW", "60"))

# Modo operacional
READ_ONLY_MODE = os.environ.get("READ_ONLY_MODE", "false").lower() == "true"

# A API retorna no máximo 25 comentários por página
COMMENTS_PAGE_SIZE = 25

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# Variável de contexto para correlation ID
_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    'correlation_id',
    default='no-cid'
)


def get_correlation_id() -> str:
    """Retorna o correlation ID atual."""
    return _correlation_id.get()


def set_new_correlation_id() -> str:
    """Gera e define um novo correlation ID."""
    new_id = str(uuid.uuid4())[:8]
    _correlation_id.set(new_id)
    return new_id


def _add_correlation_id(record) -> None:
    record["extra"]["correlation_id"] = get_correlation_id()


# Remove default logger; o patcher vale para todos os módulos (inclusive o formatter)
logger.remove()
logger.configure(patcher=_add_correlation_id)

LOG_FILE = os.environ.get("LOG_FILE", "")

# stderr: stdout é reservado ao transporte stdio do MCP
logger.add(
    sys.stderr,
    level=LOG_LEVEL,
    format="<level>{level: <8}</level> | [{extra[correlation_id]}] <cyan>{function}</cyan>:<cyan>{line}</cyan> - {message}",
    colorize=True
)

if LOG_FILE:
    logger.add(
        LOG_FILE,
        level=LOG_LEVEL,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | [{extra[correlation_id]}] {function}:{line} - {message}",
        rotation="10 MB",
        retention="7 days",
        compression="gz",
        serialize=False,
        enqueue=True
    )

# ============================================================================
# MÉTRICAS
# ============================================================================


class Metrics:
    """
    Métricas de diagnóstico do servidor.

    Contadores por tool, cache, chamadas à API, retries e latência (p50, p95, p99).
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.tool_calls: Dict[str, int] = defaultdict(int)
        self.tool_errors: Dict[str, int] = defaultdict(int)
        self.cache_hits: int = 0
        self.cache_misses: int = 0
        self.api_calls: int = 0
        self.retries: int = 0
        self._max_samples = max_latency_samples
        self._latencies: List[float] = []  # em milissegundos
        self._tool_latencies: Dict[str, List[float]] = defaultdict(list)

    def record_tool_call(self, tool_name: str) -> None:
        self.tool_calls[tool_name] += 1

    def record_tool_error(self, tool_name: str) -> None:
        self.tool_errors[tool_name] += 1

    def record_cache_hit(self) -> None:
        self.cache_hits += 1

    def record_cache_miss(self) -> None:
        self.cache_misses += 1

    def record_api_call(self) -> None:
        self.api_calls += 1

    def record_retry(self) -> None:
        self.retries += 1

    def record_latency(self, latency_ms: float, tool_name: Optional[str] = None) -> None:
        """
        Registra latência de uma operação.

        Mantém apenas as últimas N amostras (N/10 por tool).
        """
        if len(self._latencies) >= self._max_samples:
            self._latencies.pop(0)
        self._latencies.append(latency_ms)

        if tool_name:
            samples = self._tool_latencies[tool_name]
            if len(samples) >= max(self._max_samples // 10, 1):
                samples.pop(0)
            samples.append(latency_ms)

    @contextmanager
    def measure_latency(self, tool_name: Optional[str] = None):
        """
        Context manager para medir latência.

        Usage:
            with _metrics.measure_latency("clickup_get_task_comments"):
                data = await api_request(...)
        """
        start = perf_counter()
        try:
            yield
        finally:
            self.record_latency((perf_counter() - start) * 1000, tool_name)

    @staticmethod
    def _percentiles(data: List[float]) -> Dict[str, float]:
        if not data:
            return {"p50": 0, "p95": 0, "p99": 0, "avg": 0, "min": 0, "max": 0, "samples": 0}

        ordered = sorted(data)
        n = len(ordered)
        return {
            "p50": ordered[int(n * 0.50)],
            "p95": ordered[min(int(n * 0.95), n - 1)],
            "p99": ordered[min(int(n * 0.99), n - 1)],
            "avg": statistics.mean(ordered),
            "min": ordered[0],
            "max": ordered[-1],
            "samples": n
        }

    def get_summary(self) -> Dict[str, Any]:
        """Retorna resumo completo das métricas."""
        lookups = self.cache_hits + self.cache_misses
        summary = {
            "tool_calls": dict(self.tool_calls),
            "tool_errors": dict(self.tool_errors),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hits / lookups if lookups else 0,
            "api_calls": self.api_calls,
            "retries": self.retries,
            "latency_ms": self._percentiles(self._latencies)
        }

        if self._tool_latencies:
            summary["latency_by_tool"] = {
                tool: self._percentiles(samples)
                for tool, samples in self._tool_latencies.items()
            }

        return summary


# Instância global de métricas
_metrics = Metrics()

# ============================================================================
# VALIDAÇÃO DE CONFIGURAÇÃO
# ============================================================================

# Permite startup sem token (testes)
_PYTEST_RUNNING = "pytest" in sys.modules or "PYTEST_CURRENT_TEST" in os.environ
ALLOW_MISSING_TOKEN = os.environ.get("ALLOW_MISSING_TOKEN", "false").lower() == "true" or _PYTEST_RUNNING

REQUIRED_ENV_VARS = ["CLICKUP_API_TOKEN"]
OPTIONAL_ENV_VARS = [
    "DEFAULT_TIMEOUT", "CACHE_TTL_COMMENTS", "LOG_LEVEL", "LOG_FILE", "READ_ONLY_MODE",
    "ALLOW_MISSING_TOKEN", "RATE_LIMIT_REQUESTS", "RATE_LIMIT_WINDOW"
]


def validate_config() -> None:
    """
    Valida configuração no startup. Fail-fast para variáveis obrigatórias.

    Raises:
        EnvironmentError: Se variável obrigatória não está configurada
    """
    missing = [var for var in REQUIRED_ENV_VARS if not os.environ.get(var)]

    if missing and not ALLOW_MISSING_TOKEN:
        error_msg = f"Variáveis de ambiente obrigatórias não configuradas: {', '.join(missing)}"
        logger.error(error_msg)
        raise EnvironmentError(error_msg)
    elif missing:
        logger.warning(f"Variáveis não configuradas (permitido por ALLOW_MISSING_TOKEN): {', '.join(missing)}")

    # Possível typo em variáveis CLICKUP_*
    known = set(REQUIRED_ENV_VARS + OPTIONAL_ENV_VARS)
    for var in sorted(k for k in os.environ if k.startswith("CLICKUP_") and k not in known):
        logger.warning(f"Variável desconhecida ignorada (possível typo?): {var}")

    mode = "READ_ONLY" if READ_ONLY_MODE else "READ_WRITE"
    logger.info(f"Configuração validada | Modo: {mode}")


validate_config()

mcp = FastMCP("clickup_comments_mcp")

# ============================================================================
# CACHE
# ============================================================================

_comments_cache: TTLCache = TTLCache(maxsize=200, ttl=CACHE_TTL_COMMENTS)


def cache_key(endpoint: str, params: Optional[Dict] = None) -> str:
    """Gera chave de cache única para endpoint + params."""
    params_str = json.dumps(params, sort_keys=True) if params else ""
    return f"{endpoint}:{params_str}"


def get_cached(endpoint: str, params: Optional[Dict] = None) -> Optional[Dict]:
    """Busca resposta no cache de comentários."""
    result = _comments_cache.get(cache_key(endpoint, params))
    if result is not None:
        _metrics.record_cache_hit()
        logger.debug(f"Cache HIT: {endpoint}")
    else:
        _metrics.record_cache_miss()
    return result


def set_cached(endpoint: str, data: Dict, params: Optional[Dict] = None) -> None:
    """Armazena resposta no cache de comentários."""
    _comments_cache[cache_key(endpoint, params)] = data
    logger.debug(f"Cache SET: {endpoint}")


def invalidate_cached(endpoint: Optional[str] = None) -> int:
    """
    Remove entradas do cache após uma escrita.

    Args:
        endpoint: Endpoint afetado; None limpa tudo (ex.: edição por ID
            de comentário, quando o pai é desconhecido)

    Returns:
        Quantidade de entradas removidas
    """
    if endpoint is None:
        removed = len(_comments_cache)
        _comments_cache.clear()
    else:
        prefix = f"{endpoint}:"
        stale = [key for key in list(_comments_cache.keys()) if key.startswith(prefix)]
        for key in stale:
            _comments_cache.pop(key, None)
        removed = len(stale)

    if removed:
        logger.debug(f"Cache INVALIDATE: {endpoint or '*'} ({removed} entradas)")
    return removed


# ============================================================================
# RATE LIMITING
# ============================================================================

class RateLimiter:
    """Rate limiter simples baseado em janela deslizante."""

    def __init__(self, max_requests: int = RATE_LIMIT_REQUESTS, window_seconds: int = RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: List[float] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Aguarda até que seja seguro fazer uma requisição."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            self.requests = [t for t in self.requests if now - t < self.window_seconds]

            if len(self.requests) >= self.max_requests:
                wait_time = self.window_seconds - (now - self.requests[0]) + 0.1
                logger.warning(f"Rate limit atingido. Aguardando {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
                now = asyncio.get_running_loop().time()

            self.requests.append(now)


_rate_limiter = RateLimiter()

# ============================================================================
# CONNECTION POOLING
# ============================================================================

_http_client: Optional[httpx.AsyncClient] = None


async def get_http_client() -> httpx.AsyncClient:
    """Retorna cliente HTTP com connection pooling."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=DEFAULT_TIMEOUT,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20)
        )
    return _http_client

# ============================================================================
# ENUMS
# ============================================================================

class ResponseFormat(str, Enum):
    """Formato de resposta das tools de escrita."""
    MARKDOWN = "markdown"
    JSON = "json"


class OutputMode(str, Enum):
    """Modo de formatação do output das tools de leitura."""
    COMPACT = "compact"      # 1 linha por comentário (DEFAULT)
    DETAILED = "detailed"    # Markdown completo de cada comentário
    JSON = "json"            # Raw JSON (com comment_markdown)

# ============================================================================
# EXCEÇÕES ESPECÍFICAS
# ============================================================================

class ClickUpError(Exception):
    """Exceção base para erros do ClickUp MCP."""
    pass


class ConfigurationError(ClickUpError):
    """Erro de configuração (variáveis de ambiente, etc)."""
    pass


class ReadOnlyModeError(ClickUpError):
    """Operação de escrita bloqueada em modo read-only."""
    pass


class ClickUpAPIError(ClickUpError):
    """Erro retornado pela API do ClickUp."""

    def __init__(self, message: str, status_code: int, endpoint: str, err_code: Optional[str] = None):
        self.status_code = status_code
        self.endpoint = endpoint
        self.err_code = err_code
        super().__init__(f"[{status_code}] {message} (endpoint: {endpoint})")


class RetryableError(ClickUpError):
    """Erro que pode ser retentado (network, timeout, 429, 5xx)."""
    pass


class ValidationError(ClickUpError):
    """Erro de validação de entrada."""
    pass


def check_write_permission(operation: str) -> None:
    """
    Verifica se operações de escrita são permitidas.

    Raises:
        ReadOnlyModeError: Se servidor está em modo read-only
    """
    if READ_ONLY_MODE:
        raise ReadOnlyModeError(
            f"Operação '{operation}' bloqueada: servidor em modo READ_ONLY. "
            f"Para habilitar escrita, configure READ_ONLY_MODE=false"
        )

# ============================================================================
# CLIENTE HTTP
# ============================================================================

def get_headers() -> Dict[str, str]:
    """
    Retorna headers para autenticação na API.

    Raises:
        ConfigurationError: Se CLICKUP_API_TOKEN não está configurado
    """
    if not API_TOKEN:
        raise ConfigurationError(
            "CLICKUP_API_TOKEN não configurado! "
            "Configure a variável de ambiente CLICKUP_API_TOKEN com seu token de API do ClickUp. "
            "Obtenha em: ClickUp → Settings → Apps → API Token"
        )
    return {
        "Authorization": API_TOKEN,
        "Content-Type": "application/json"
    }


def _api_error(response: httpx.Response, endpoint: str) -> ClickUpAPIError:
    """Monta ClickUpAPIError a partir do corpo de erro ({"err", "ECODE"})."""
    err_code = None
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        body = response.text

    if isinstance(body, dict):
        message = body.get("err") or json.dumps(body, ensure_ascii=False)
        err_code = body.get("ECODE")
    else:
        message = body or response.reason_phrase

    return ClickUpAPIError(message, response.status_code, endpoint, err_code)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(RetryableError),
    reraise=True
)
async def _make_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    endpoint: str,
    headers: Dict[str, str],
    params: Optional[Dict] = None,
    json_data: Optional[Dict] = None
) -> Dict[str, Any]:
    """Faz requisição HTTP com retry automático para erros transientes."""
    try:
        response = await client.request(
            method=method,
            url=url,
            headers=headers,
            params=params,
            json=json_data
        )
    except httpx.TimeoutException:
        _metrics.record_retry()
        logger.warning(f"Timeout em {method} {endpoint}, retentando...")
        raise RetryableError("Timeout")
    except httpx.ConnectError:
        _metrics.record_retry()
        logger.warning(f"Erro de conexão em {method} {endpoint}, retentando...")
        raise RetryableError("Connection error")

    if response.status_code == 429:
        retry_after = int(response.headers.get("Retry-After", 5))
        _metrics.record_retry()
        logger.warning(f"Rate limited (429). Aguardando {retry_after}s")
        await asyncio.sleep(retry_after)
        raise RetryableError("Rate limited (429)")

    if response.status_code >= 500:
        _metrics.record_retry()
        raise RetryableError(f"Server error ({response.status_code})")

    if response.status_code >= 400:
        raise _api_error(response, endpoint)

    if response.status_code == 204 or not response.content:
        return {"success": True}

    return response.json()


async def api_request(
    method: str,
    endpoint: str,
    params: Optional[Dict] = None,
    json_data: Optional[Dict] = None,
    use_cache: bool = True
) -> Dict[str, Any]:
    """
    Faz requisição à API do ClickUp com retry, cache e rate limiting.

    Args:
        method: Método HTTP (GET, POST, PUT, DELETE)
        endpoint: Endpoint da API (sem base URL)
        params: Query parameters
        json_data: Dados JSON para POST/PUT
        use_cache: Se deve usar cache (apenas para GET)

    Returns:
        Resposta da API como dicionário

    Raises:
        ClickUpAPIError: Erro 4xx retornado pela API
        ClickUpError: Erros transientes após 3 tentativas
    """
    if method == "GET" and use_cache:
        cached = get_cached(endpoint, params)
        if cached is not None:
            return cached

    await _rate_limiter.acquire()

    client = await get_http_client()
    _metrics.record_api_call()
    logger.debug(f"API {method} {endpoint}")

    try:
        result = await _make_request(
            client, method, f"{API_BASE_URL}{endpoint}", endpoint, get_headers(), params, json_data
        )
    except RetryableError as e:
        raise ClickUpError(f"Erro após 3 tentativas: {e}") from e

    if method == "GET" and use_cache:
        set_cached(endpoint, result, params)

    return result

# ============================================================================
# FUNÇÕES AUXILIARES
# ============================================================================

def sanitize_output(text: str) -> str:
    """
    Sanitiza texto de output.

    Remove caracteres de controle (exceto newline e tab) e limita o tamanho.
    """
    if not isinstance(text, str):
        text = str(text)

    sanitized = ''.join(
        char for char in text
        if char in '\n\t' or (ord(char) >= 32 and ord(char) != 127)
    )

    max_length = 100000
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "\n\n[... output truncado ...]"

    return sanitized


def sanitize_dict_values(d: Dict[str, Any]) -> Dict[str, Any]:
    """Sanitiza valores string em um dicionário recursivamente."""
    result = {}
    for key, value in d.items():
        if isinstance(value, str):
            result[key] = sanitize_output(value)
        elif isinstance(value, dict):
            result[key] = sanitize_dict_values(value)
        elif isinstance(value, list):
            result[key] = [
                sanitize_dict_values(item) if isinstance(item, dict)
                else sanitize_output(item) if isinstance(item, str)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def format_timestamp(ts: Optional[int]) -> Optional[str]:
    """
    Converte timestamp em milissegundos para string legível.

    Returns:
        String formatada YYYY-MM-DD HH:MM:SS ou None
    """
    if ts is None:
        return None
    try:
        dt = datetime.fromtimestamp(int(ts) / 1000)
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, TypeError, OSError):
        return str(ts)


def process_comment(comment: Dict[str, Any]) -> Dict[str, Any]:
    """
    Adiciona `comment_markdown` a um comentário retornado pela API.

    Usa o formato estruturado ("comment") quando presente; caso a conversão
    não produza texto, cai para o `comment_text`.
    """
    processed = dict(comment)
    markdown = ""
    if comment.get("comment"):
        markdown = document_to_markdown(comment["comment"])
    processed["comment_markdown"] = markdown or comment.get("comment_text") or ""
    return processed


def build_comment_payload(
    comment_text: Optional[str],
    notify_all: Optional[bool] = None,
    assignee: Optional[int] = None,
    resolved: Optional[bool] = None
) -> Dict[str, Any]:
    """
    Monta o corpo de criação/edição de comentário.

    O markdown de `comment_text` vira o formato estruturado em "comment";
    o texto original segue em "comment_text" por compatibilidade.
    """
    payload: Dict[str, Any] = {}
    if comment_text is not None:
        payload.update(prepare_comment_for_clickup(comment_text))
    if notify_all is not None:
        payload["notify_all"] = notify_all
    if assignee is not None:
        payload["assignee"] = assignee
    if resolved is not None:
        payload["resolved"] = resolved
    return payload


def _first_line(text: str, limit: int = 60) -> str:
    line = text.strip().split("\n", 1)[0]
    return line if len(line) <= limit else line[:limit] + "..."


def format_comments_compact(comments: List[Dict]) -> str:
    """
    Formata comentários em modo compacto: 1 linha por comentário.

    Formato: {i}. {usuário} ({data}): {primeira linha} | {respostas} | `{id}`
    """
    if not comments:
        return "Nenhum comentário encontrado."

    lines = [f"**{len(comments)} comentários:**\n"]
    for i, comment in enumerate(comments, 1):
        user = (comment.get("user") or {}).get("username", "Anônimo")
        date = format_timestamp(comment.get("date"))
        text = _first_line(comment.get("comment_markdown") or comment.get("comment_text", ""))
        resolved = " ✅" if comment.get("resolved") else ""
        replies = comment.get("reply_count") or comment.get("replies_count")
        replies_str = f" | {replies} respostas" if replies else ""
        lines.append(
            f"{i}. {user} ({date[:10] if date else '-'}): {text}{resolved}{replies_str} | `{comment.get('id', '')}`"
        )

    if len(comments) >= COMMENTS_PAGE_SIZE:
        last = comments[-1]
        lines.append(
            f"\n_Mostrando {len(comments)} comentários. Use `start={last.get('date')}` "
            f"e `start_id={last.get('id')}` para os anteriores._"
        )

    return "\n".join(lines)


def format_comments_detailed(comments: List[Dict]) -> str:
    """Formata comentários em modo detalhado, com o markdown completo."""
    if not comments:
        return "Nenhum comentário encontrado."

    lines = ["# Comentários\n"]
    for comment in comments:
        user = (comment.get("user") or {}).get("username", "Anônimo")
        date = format_timestamp(comment.get("date"))
        lines.append(f"### {user} - {date or 'N/A'}")
        lines.append(f"- **ID:** `{comment.get('id', 'N/A')}`")
        if comment.get("resolved"):
            lines.append("- **Resolvido:** sim")
        assignee = comment.get("assignee")
        if assignee:
            lines.append(f"- **Responsável:** {assignee.get('username', assignee.get('email', 'N/A'))}")
        replies = comment.get("reply_count") or comment.get("replies_count")
        if replies:
            lines.append(f"- **Respostas:** {replies}")
        lines.append("")
        lines.append(comment.get("comment_markdown") or comment.get("comment_text", ""))
        lines.append("")

    return "\n".join(lines)


def fuzzy_search_comments(comments: List[Dict], query: str, threshold: float = 0.5) -> List[Dict]:
    """
    Busca fuzzy no texto dos comentários usando rapidfuzz.

    Args:
        comments: Comentários já processados (com comment_markdown)
        query: Texto de busca
        threshold: Limiar mínimo de similaridade (0.0 a 1.0)

    Returns:
        Comentários ordenados por relevância
    """
    if not comments or not query:
        return []

    choices = {
        index: comment.get("comment_markdown") or comment.get("comment_text") or ""
        for index, comment in enumerate(comments)
    }

    matches = process.extract(
        query,
        choices,
        scorer=fuzz.WRatio,
        score_cutoff=threshold * 100,
        limit=None
    )
    return [comments[index] for _, _, index in matches]

# ============================================================================
# MODELOS DE INPUT
# ============================================================================

_OUTPUT_MODE_DESCRIPTION = "Modo de output: compact (1 linha), detailed (markdown completo), json (raw)"
_COMMENT_TEXT_DESCRIPTION = (
    "Texto do comentário em markdown: **negrito**, *itálico*, __sublinhado__, "
    "~~tachado~~, `código`, [link](url), # títulos, - listas, > citações, ``` blocos ```"
)


class GetCommentsInput(BaseModel):
    """Paginação comum das listagens de comentários."""
    model_config = ConfigDict(str_strip_whitespace=True)
    start: Optional[int] = Field(
        default=None,
        description="Timestamp (ms) do comentário mais antigo já lido, para paginar"
    )
    start_id: Optional[str] = Field(default=None, description="ID do comentário mais antigo já lido")
    output_mode: OutputMode = Field(default=OutputMode.COMPACT, description=_OUTPUT_MODE_DESCRIPTION)


class GetTaskCommentsInput(GetCommentsInput):
    """Input para buscar comentários de uma task."""
    task_id: str = Field(..., description="ID da task", min_length=1)


class GetListCommentsInput(GetCommentsInput):
    """Input para buscar comentários de uma list."""
    list_id: str = Field(..., description="ID da list", min_length=1)


class GetChatViewCommentsInput(GetCommentsInput):
    """Input para buscar comentários de uma Chat view."""
    view_id: str = Field(..., description="ID da view (Chat)", min_length=1)


class GetThreadedCommentsInput(BaseModel):
    """Input para buscar respostas de um comentário."""
    model_config = ConfigDict(str_strip_whitespace=True)
    comment_id: str = Field(..., description="ID do comentário pai", min_length=1)
    output_mode: OutputMode = Field(default=OutputMode.COMPACT, description=_OUTPUT_MODE_DESCRIPTION)


class CommentBodyInput(BaseModel):
    """
    Base das tools de escrita.

    IDs são normalizados (strip), mas o comment_text é enviado como veio:
    indentação no início do texto é significativa (listas aninhadas, código).
    """

    @field_validator("task_id", "list_id", "view_id", "comment_id", mode="before", check_fields=False)
    @classmethod
    def _strip_id(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("comment_text", check_fields=False)
    @classmethod
    def _not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("comment_text não pode ser vazio")
        return value


class CreateTaskCommentInput(CommentBodyInput):
    """Input para criar comentário em uma task."""
    task_id: str = Field(..., description="ID da task", min_length=1)
    comment_text: str = Field(..., description=_COMMENT_TEXT_DESCRIPTION, min_length=1)
    assignee: Optional[int] = Field(default=None, description="ID do usuário responsável")
    notify_all: bool = Field(default=True, description="Notificar todos")
    response_format: ResponseFormat = Field(default=ResponseFormat.MARKDOWN)


class CreateListCommentInput(CommentBodyInput):
    """Input para criar comentário em uma list."""
    list_id: str = Field(..., description="ID da list", min_length=1)
    comment_text: str = Field(..., description=_COMMENT_TEXT_DESCRIPTION, min_length=1)
    assignee: Optional[int] = Field(default=None, description="ID do usuário responsável")
    notify_all: bool = Field(default=True, description="Notificar todos")
    response_format: ResponseFormat = Field(default=ResponseFormat.MARKDOWN)


class CreateChatViewCommentInput(CommentBodyInput):
    """Input para criar comentário em uma Chat view."""
    view_id: str = Field(..., description="ID da view (Chat)", min_length=1)
    comment_text: str = Field(..., description=_COMMENT_TEXT_DESCRIPTION, min_length=1)
    notify_all: bool = Field(default=True, description="Notificar todos")
    response_format: ResponseFormat = Field(default=ResponseFormat.MARKDOWN)


class CreateThreadedCommentInput(CommentBodyInput):
    """Input para responder a um comentário."""
    comment_id: str = Field(..., description="ID do comentário pai", min_length=1)
    comment_text: str = Field(..., description=_COMMENT_TEXT_DESCRIPTION, min_length=1)
    notify_all: bool = Field(default=True, description="Notificar todos")
    response_format: ResponseFormat = Field(default=ResponseFormat.MARKDOWN)


class UpdateCommentInput(CommentBodyInput):
    """Input para editar/resolver um comentário."""
    comment_id: str = Field(..., description="ID do comentário", min_length=1)
    comment_text: Optional[str] = Field(default=None, description=_COMMENT_TEXT_DESCRIPTION, min_length=1)
    assignee: Optional[int] = Field(default=None, description="ID do novo responsável")
    resolved: Optional[bool] = Field(default=None, description="Marcar como resolvido/não resolvido")
    response_format: ResponseFormat = Field(default=ResponseFormat.MARKDOWN)


class DeleteCommentInput(BaseModel):
    """Input para deletar um comentário."""
    model_config = ConfigDict(str_strip_whitespace=True)
    comment_id: str = Field(..., description="ID do comentário", min_length=1)


class SearchTaskCommentsInput(BaseModel):
    """Input para busca fuzzy em comentários de uma task."""
    model_config = ConfigDict(str_strip_whitespace=True)
    task_id: str = Field(..., description="ID da task", min_length=1)
    query: str = Field(..., description="Texto a buscar (aproximado)", min_length=1)
    threshold: float = Field(default=0.5, ge=0.0, le=1.0, description="Similaridade mínima (0.0 a 1.0)")
    limit: int = Field(default=10, ge=1, le=100, description="Máximo de resultados")
    output_mode: OutputMode = Field(default=OutputMode.COMPACT, description=_OUTPUT_MODE_DESCRIPTION)


class PreviewCommentFormatInput(BaseModel):
    """Input para pré-visualizar a conversão de um comentário."""
    comment_text: str = Field(..., description=_COMMENT_TEXT_DESCRIPTION, min_length=1)
    output_mode: OutputMode = Field(
        default=OutputMode.DETAILED,
        description="Modo de output: compact (resumo), detailed (segmentos), json (payload da API)"
    )


class GetMetricsInput(BaseModel):
    """Input para buscar métricas do servidor."""
    model_config = ConfigDict(str_strip_whitespace=True)
    output_mode: OutputMode = Field(
        default=OutputMode.DETAILED,
        description="Modo de output: compact (resumo), detailed (completo), json (raw)"
    )

# ============================================================================
# OPERAÇÕES COMUNS
# ============================================================================

def _pagination_params(params: GetCommentsInput) -> Optional[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if params.start is not None:
        query["start"] = params.start
    if params.start_id:
        query["start_id"] = params.start_id
    return query or None


def _render_comments(data: Dict[str, Any], output_mode: OutputMode) -> str:
    comments = [process_comment(c) for c in data.get("comments", [])]

    if output_mode == OutputMode.JSON:
        enriched = dict(data)
        enriched["comments"] = comments
        return json.dumps(sanitize_dict_values(enriched), indent=2, ensure_ascii=False)

    if output_mode == OutputMode.DETAILED:
        return sanitize_output(format_comments_detailed(comments))

    return sanitize_output(format_comments_compact(comments))


async def _list_comments(
    tool_name: str,
    endpoint: str,
    output_mode: OutputMode,
    query: Optional[Dict[str, Any]] = None
) -> str:
    """Lista comentários de qualquer pai (task, list, view, comentário)."""
    set_new_correlation_id()
    _metrics.record_tool_call(tool_name)
    logger.info(f"{tool_name}: GET {endpoint}")

    try:
        with _metrics.measure_latency(tool_name):
            data = await api_request("GET", endpoint, params=query)
        return _render_comments(data, output_mode)
    except Exception as e:
        _metrics.record_tool_error(tool_name)
        logger.error(f"{tool_name} falhou: {e}")
        return f"Erro ao listar comentários: {str(e)}"


async def _write_comment(
    tool_name: str,
    method: str,
    endpoint: str,
    payload: Dict[str, Any],
    response_format: ResponseFormat,
    success_message: str,
    invalidate: Optional[str] = None
) -> str:
    """
    Envia um comentário (POST/PUT) já no formato estruturado.

    Args:
        invalidate: Endpoint de listagem a invalidar no cache; None limpa tudo
    """
    set_new_correlation_id()
    _metrics.record_tool_call(tool_name)

    try:
        check_write_permission(tool_name)
        if not payload:
            raise ValidationError("Nada para atualizar: informe comment_text, assignee ou resolved")
        logger.info(f"{tool_name}: {method} {endpoint} ({len(payload.get('comment', []))} blocos)")

        with _metrics.measure_latency(tool_name):
            data = await api_request(method, endpoint, json_data=payload)
        invalidate_cached(invalidate)

        if response_format == ResponseFormat.JSON:
            return json.dumps(data, indent=2, ensure_ascii=False)

        comment_id = data.get("id")
        return f"{success_message} (ID: `{comment_id}`)" if comment_id else success_message
    except Exception as e:
        _metrics.record_tool_error(tool_name)
        logger.error(f"{tool_name} falhou: {e}")
        return f"Erro ao salvar comentário: {str(e)}"

# ============================================================================
# TOOLS - LEITURA DE COMENTÁRIOS
# ============================================================================

_READ_ANNOTATIONS = {
    "readOnlyHint": True,
    "destructiveHint": False,
    "idempotentHint": True,
    "openWorldHint": False
}

_WRITE_ANNOTATIONS = {
    "readOnlyHint": False,
    "destructiveHint": False,
    "idempotentHint": False,
    "openWorldHint": False
}


@mcp.tool(
    name="clickup_get_task_comments",
    annotations={"title": "Listar Comentários da Task", **_READ_ANNOTATIONS}
)
async def get_task_comments(params: GetTaskCommentsInput) -> str:
    """
    Lista os comentários de uma task, já convertidos para markdown.

    A API retorna os 25 mais recentes; use start/start_id para paginar.
    Modos de output: compact (default), detailed, json.
    """
    return await _list_comments(
        "clickup_get_task_comments",
        f"/task/{params.task_id}/comment",
        params.output_mode,
        _pagination_params(params)
    )


@mcp.tool(
    name="clickup_get_list_comments",
    annotations={"title": "Listar Comentários da List", **_READ_ANNOTATIONS}
)
async def get_list_comments(params: GetListCommentsInput) -> str:
    """
    Lista os comentários de uma list.

    Modos de output: compact (default), detailed, json.
    """
    return await _list_comments(
        "clickup_get_list_comments",
        f"/list/{params.list_id}/comment",
        params.output_mode,
        _pagination_params(params)
    )


@mcp.tool(
    name="clickup_get_chat_view_comments",
    annotations={"title": "Listar Comentários da Chat View", **_READ_ANNOTATIONS}
)
async def get_chat_view_comments(params: GetChatViewCommentsInput) -> str:
    """
    Lista os comentários de uma view do tipo Chat.

    Modos de output: compact (default), detailed, json.
    """
    return await _list_comments(
        "clickup_get_chat_view_comments",
        f"/view/{params.view_id}/comment",
        params.output_mode,
        _pagination_params(params)
    )


@mcp.tool(
    name="clickup_get_threaded_comments",
    annotations={"title": "Listar Respostas do Comentário", **_READ_ANNOTATIONS}
)
async def get_threaded_comments(params: GetThreadedCommentsInput) -> str:
    """
    Lista as respostas (thread) de um comentário.

    Modos de output: compact (default), detailed, json.
    """
    return await _list_comments(
        "clickup_get_threaded_comments",
        f"/comment/{params.comment_id}/reply",
        params.output_mode
    )


@mcp.tool(
    name="clickup_search_task_comments",
    annotations={"title": "Busca Fuzzy em Comentários", **_READ_ANNOTATIONS}
)
async def search_task_comments(params: SearchTaskCommentsInput) -> str:
    """
    Busca comentários de uma task por correspondência aproximada (fuzzy).

    Útil para achar uma discussão sem lembrar o texto exato.
    O threshold controla a precisão: 0.3 (mais resultados) a 0.7 (mais preciso).

    Returns:
        Comentários ordenados por relevância (mais similar primeiro).
    """
    tool_name = "clickup_search_task_comments"
    set_new_correlation_id()
    _metrics.record_tool_call(tool_name)
    logger.info(f"Busca fuzzy em comentários: query='{params.query}', task={params.task_id}")

    try:
        with _metrics.measure_latency(tool_name):
            data = await api_request("GET", f"/task/{params.task_id}/comment")
        comments = [process_comment(c) for c in data.get("comments", [])]

        matched = fuzzy_search_comments(comments, params.query, params.threshold)
        total_matches = len(matched)
        matched = matched[:params.limit]

        logger.info(f"Fuzzy search: {total_matches} matches de {len(comments)} comentários")

        if not matched:
            return f"Nenhum comentário encontrado para '{params.query}' (threshold={params.threshold})"

        if params.output_mode == OutputMode.JSON:
            return json.dumps(sanitize_dict_values({
                "query": params.query,
                "threshold": params.threshold,
                "total_matches": total_matches,
                "comments": matched
            }), indent=2, ensure_ascii=False)

        header = f"**Busca fuzzy:** '{params.query}' ({total_matches} resultados)\n"
        if params.output_mode == OutputMode.DETAILED:
            return sanitize_output(header + "\n" + format_comments_detailed(matched))
        return sanitize_output(header + format_comments_compact(matched))

    except Exception as e:
        _metrics.record_tool_error(tool_name)
        return f"Erro na busca fuzzy: {str(e)}"

# ============================================================================
# TOOLS - ESCRITA DE COMENTÁRIOS
# ============================================================================

@mcp.tool(
    name="clickup_create_task_comment",
    annotations={"title": "Criar Comentário na Task", **_WRITE_ANNOTATIONS}
)
async def create_task_comment(params: CreateTaskCommentInput) -> str:
    """
    Adiciona um comentário a uma task. Aceita markdown, que é convertido
    para a formatação nativa do ClickUp.

    Returns:
        Confirmação do comentário criado.
    """
    endpoint = f"/task/{params.task_id}/comment"
    return await _write_comment(
        "clickup_create_task_comment",
        "POST",
        endpoint,
        build_comment_payload(params.comment_text, params.notify_all, params.assignee),
        params.response_format,
        "✅ Comentário adicionado com sucesso!",
        invalidate=endpoint
    )


@mcp.tool(
    name="clickup_create_list_comment",
    annotations={"title": "Criar Comentário na List", **_WRITE_ANNOTATIONS}
)
async def create_list_comment(params: CreateListCommentInput) -> str:
    """Adiciona um comentário (markdown) a uma list."""
    endpoint = f"/list/{params.list_id}/comment"
    return await _write_comment(
        "clickup_create_list_comment",
        "POST",
        endpoint,
        build_comment_payload(params.comment_text, params.notify_all, params.assignee),
        params.response_format,
        "✅ Comentário adicionado à list com sucesso!",
        invalidate=endpoint
    )


@mcp.tool(
    name="clickup_create_chat_view_comment",
    annotations={"title": "Criar Comentário na Chat View", **_WRITE_ANNOTATIONS}
)
async def create_chat_view_comment(params: CreateChatViewCommentInput) -> str:
    """Publica uma mensagem (markdown) em uma view do tipo Chat."""
    endpoint = f"/view/{params.view_id}/comment"
    return await _write_comment(
        "clickup_create_chat_view_comment",
        "POST",
        endpoint,
        build_comment_payload(params.comment_text, params.notify_all),
        params.response_format,
        "✅ Mensagem publicada com sucesso!",
        invalidate=endpoint
    )


@mcp.tool(
    name="clickup_create_threaded_comment",
    annotations={"title": "Responder Comentário", **_WRITE_ANNOTATIONS}
)
async def create_threaded_comment(params: CreateThreadedCommentInput) -> str:
    """Responde a um comentário existente (thread). Aceita markdown."""
    endpoint = f"/comment/{params.comment_id}/reply"
    # O contador de respostas do pai também muda: limpa tudo
    return await _write_comment(
        "clickup_create_threaded_comment",
        "POST",
        endpoint,
        build_comment_payload(params.comment_text, params.notify_all),
        params.response_format,
        "✅ Resposta adicionada com sucesso!",
        invalidate=None
    )


@mcp.tool(
    name="clickup_update_comment",
    annotations={"title": "Editar Comentário", **_WRITE_ANNOTATIONS, "idempotentHint": True}
)
async def update_comment(params: UpdateCommentInput) -> str:
    """
    Edita um comentário: texto (markdown), responsável e/ou status resolvido.

    Pelo menos um dos campos deve ser informado.
    """
    return await _write_comment(
        "clickup_update_comment",
        "PUT",
        f"/comment/{params.comment_id}",
        build_comment_payload(params.comment_text, assignee=params.assignee, resolved=params.resolved),
        params.response_format,
        "✅ Comentário atualizado com sucesso!",
        invalidate=None
    )


@mcp.tool(
    name="clickup_delete_comment",
    annotations={
        "title": "Deletar Comentário",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def delete_comment(params: DeleteCommentInput) -> str:
    """
    Deleta um comentário permanentemente.

    Returns:
        Confirmação da exclusão.
    """
    tool_name = "clickup_delete_comment"
    set_new_correlation_id()
    _metrics.record_tool_call(tool_name)

    try:
        check_write_permission(tool_name)
        logger.info(f"Deletando comentário {params.comment_id}")
        with _metrics.measure_latency(tool_name):
            await api_request("DELETE", f"/comment/{params.comment_id}")
        invalidate_cached()
        return f"✅ Comentário `{params.comment_id}` deletado com sucesso!"
    except Exception as e:
        _metrics.record_tool_error(tool_name)
        logger.error(f"{tool_name} falhou: {e}")
        return f"Erro ao deletar comentário: {str(e)}"

# ============================================================================
# TOOLS - FORMATAÇÃO
# ============================================================================

def _describe_attributes(attributes: Dict[str, Any]) -> str:
    if not attributes:
        return "texto"
    parts = [name for name, value in attributes.items() if value is True]
    if "link" in attributes:
        parts.append(f"link → {attributes['link']['url']}")
    for name in ("color", "background_color"):
        if name in attributes:
            parts.append(f"{name}={attributes[name]}")
    return ", ".join(parts)


@mcp.tool(
    name="clickup_preview_comment_format",
    annotations={"title": "Pré-visualizar Formatação", **_READ_ANNOTATIONS}
)
async def preview_comment_format(params: PreviewCommentFormatInput) -> str:
    """
    Mostra como um texto markdown será enviado ao ClickUp, sem chamar a API.

    Modos de output: compact (resumo), detailed (default, segmentos), json (payload).
    """
    _metrics.record_tool_call("clickup_preview_comment_format")
    payload = prepare_comment_for_clickup(params.comment_text)
    blocks = payload["comment"]

    if params.output_mode == OutputMode.JSON:
        return json.dumps(payload, indent=2, ensure_ascii=False)

    if params.output_mode == OutputMode.COMPACT:
        styled = sum(1 for block in blocks if block["attributes"])
        return f"**{len(blocks)} blocos** ({styled} formatados)"

    lines = [f"# Pré-visualização ({len(blocks)} blocos)\n"]
    for i, block in enumerate(blocks, 1):
        text = block["text"].replace("\n", "⏎")
        lines.append(f"{i}. `{text}` → {_describe_attributes(block['attributes'])}")

    lines.append("\n## Markdown reconstruído")
    lines.append(document_to_markdown(CommentDocument.from_clickup(payload)))
    return sanitize_output("\n".join(lines))

# ============================================================================
# TOOLS - DIAGNÓSTICO
# ============================================================================

@mcp.tool(
    name="clickup_get_metrics",
    annotations={"title": "Métricas do Servidor", **_READ_ANNOTATIONS}
)
async def get_metrics(params: GetMetricsInput) -> str:
    """
    Retorna métricas de diagnóstico do servidor MCP.

    Inclui: chamadas por tool, cache hit rate, API calls, retries, latência.
    """
    set_new_correlation_id()
    logger.info("Gerando métricas")

    summary = _metrics.get_summary()
    operation_mode = "READ_ONLY" if READ_ONLY_MODE else "READ_WRITE"
    summary["operation_mode"] = operation_mode
    mode_icon = "🔒" if READ_ONLY_MODE else "✏️"

    if params.output_mode == OutputMode.JSON:
        return json.dumps(summary, indent=2, ensure_ascii=False)

    if params.output_mode == OutputMode.COMPACT:
        return (
            f"**Métricas** | "
            f"Modo: {mode_icon} {operation_mode} | "
            f"API: {summary['api_calls']} calls | "
            f"Cache: {summary['cache_hit_rate']:.0%} hit | "
            f"Retries: {summary['retries']}"
        )

    lines = ["# Métricas do Servidor\n"]
    lines.append("## Configuração")
    lines.append(f"- **Modo de Operação:** {mode_icon} {operation_mode}")

    lines.append("\n## Resumo")
    lines.append(f"- **API Calls:** {summary['api_calls']}")
    lines.append(f"- **Cache Hits:** {summary['cache_hits']}")
    lines.append(f"- **Cache Misses:** {summary['cache_misses']}")
    lines.append(f"- **Cache Hit Rate:** {summary['cache_hit_rate']:.1%}")
    lines.append(f"- **Retries:** {summary['retries']}")

    latency = summary["latency_ms"]
    if latency["samples"]:
        lines.append("\n## Latência (ms)")
        lines.append(f"- p50: {latency['p50']:.0f} | p95: {latency['p95']:.0f} | p99: {latency['p99']:.0f}")

    if summary['tool_calls']:
        lines.append("\n## Chamadas por Tool")
        for tool, count in sorted(summary['tool_calls'].items(), key=lambda x: -x[1]):
            lines.append(f"- {tool}: {count}")

    if summary['tool_errors']:
        lines.append("\n## Erros por Tool")
        for tool, count in sorted(summary['tool_errors'].items(), key=lambda x: -x[1]):
            lines.append(f"- {tool}: {count}")

    return "\n".join(lines)


# ============================================================================
# MAIN
# ============================================================================

def main() -> None:
    """Entry point: servidor MCP via stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
