import os
import re
import uuid
import pathlib
import logging
import threading
from typing import List, Dict, Any, Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from openai import OpenAI
from supabase import Client, create_client

from onboarding import (
    ConversationSession,
    begin_turn,
    new_session,
    progress_snapshot,
    record_reply,
)

DOTENV_LOADED = load_dotenv()
logger = logging.getLogger("profile_chat")


# -----------------------------
# Configuration (env vars)
# -----------------------------
# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
OPENAI_API_KEY_PLACEHOLDER = "tu-api-key-aqui"
TEMPERATURE = 0.7
MAX_OUTPUT_TOKENS = 1000

# Supabase auth
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY")
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "sb-access-token")
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() in {"1", "true", "yes"}

# System instructions
SYSTEM_INSTRUCTIONS_PATH = os.getenv("SYSTEM_INSTRUCTIONS_PATH", "system_instructions.txt")
DEFAULT_SYSTEM_INSTRUCTIONS = (
    "Eres un asistente de IA útil y amigable. Responde de manera conversacional y natural en español. "
    "Mantén tus respuestas concisas pero informativas. "
    "Tu objetivo es conocer la empresa en la que trabaja el usuario, la industria de esa empresa "
    "y el rol que ocupa, en ese orden."
)
SYSTEM_INSTRUCTIONS = DEFAULT_SYSTEM_INSTRUCTIONS
SYSTEM_INSTRUCTIONS_SOURCE = "default"
SYSTEM_INSTRUCTIONS_PATH_RESOLVED: Optional[str] = None

# Conversation memory (in process only)
CHAT_HISTORY_TURNS = int(os.getenv("CHAT_HISTORY_TURNS", "10"))

GREETING = "¡Hola! Soy tu asistente de IA. Para empezar, ¿en qué empresa trabajas?"
CONNECTION_TEST_PROMPT = "Hola, ¿estás funcionando?"

UNAUTHORIZED_MESSAGE = "No autorizado. Debes iniciar sesión."
CONFIG_ERROR_MESSAGE = (
    "OPENAI_API_KEY no está configurada correctamente. "
    "Por favor, configura tu API key en el archivo .env"
)

ERROR_MESSAGES = {
    "auth": "❌ Error de autenticación: Verifica que tu API key de OpenAI esté configurada correctamente.",
    "quota": "💳 Error de cuota: Has excedido tu límite de uso de la API de OpenAI. Verifica tu plan de facturación.",
    "network": "🌐 Error de conexión: No se pudo conectar con la API de OpenAI. Verifica tu conexión a internet.",
    "unknown": "⚠️ Lo siento, hubo un error inesperado al procesar tu mensaje. Por favor, intenta de nuevo en unos momentos.",
}


# -----------------------------
# Helpers
# -----------------------------
def _format_env_value(key: str, value: Optional[str]) -> str:
    if value is None:
        return "<unset>"
    if not isinstance(value, str):
        return str(value)
    if key in {"OPENAI_API_KEY", "SUPABASE_ANON_KEY"}:
        if value == "":
            return "<unset>"
        return f"****{value[-4:]}" if len(value) > 4 else "****"
    if value == "":
        return "<empty>"
    return value


def _resolve_instructions_path(path_value: str) -> pathlib.Path:
    path = pathlib.Path(path_value)
    if not path.is_absolute():
        path = (pathlib.Path(__file__).resolve().parent / path).resolve()
    return path


def load_system_instructions() -> Tuple[str, str, Optional[str]]:
    if not SYSTEM_INSTRUCTIONS_PATH:
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", None

    path = _resolve_instructions_path(SYSTEM_INSTRUCTIONS_PATH)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("System instructions file not found: %s. Using default.", path)
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", str(path)
    except OSError as exc:
        logger.warning(
            "Failed to read system instructions file %s: %s. Falling back to default.",
            path,
            exc,
        )
        return DEFAULT_SYSTEM_INSTRUCTIONS, "default", str(path)

    text = text.strip()
    if text == "":
        logger.warning("System instructions file %s is empty; using empty instructions.", path)
    return text, "file", str(path)


def reload_system_instructions() -> None:
    global SYSTEM_INSTRUCTIONS, SYSTEM_INSTRUCTIONS_SOURCE, SYSTEM_INSTRUCTIONS_PATH_RESOLVED
    (
        SYSTEM_INSTRUCTIONS,
        SYSTEM_INSTRUCTIONS_SOURCE,
        SYSTEM_INSTRUCTIONS_PATH_RESOLVED,
    ) = load_system_instructions()


def log_env_config() -> None:
    values = {
        "OPENAI_API_KEY": OPENAI_API_KEY,
        "OPENAI_MODEL": OPENAI_MODEL,
        "SUPABASE_URL": SUPABASE_URL,
        "SUPABASE_ANON_KEY": SUPABASE_ANON_KEY,
        "SESSION_COOKIE_NAME": SESSION_COOKIE_NAME,
        "SESSION_COOKIE_SECURE": SESSION_COOKIE_SECURE,
        "SYSTEM_INSTRUCTIONS_PATH": SYSTEM_INSTRUCTIONS_PATH,
        "SYSTEM_INSTRUCTIONS_PATH_RESOLVED": SYSTEM_INSTRUCTIONS_PATH_RESOLVED,
        "SYSTEM_INSTRUCTIONS_SOURCE": SYSTEM_INSTRUCTIONS_SOURCE,
        "SYSTEM_INSTRUCTIONS_LENGTH": len(SYSTEM_INSTRUCTIONS or ""),
        "CHAT_HISTORY_TURNS": CHAT_HISTORY_TURNS,
    }

    logger.info("dotenv loaded: %s", DOTENV_LOADED)
    logger.info("Environment configuration:")
    for key, value in values.items():
        logger.info("  %s=%s", key, _format_env_value(key, value))


def api_key_configured() -> bool:
    return bool(OPENAI_API_KEY) and OPENAI_API_KEY != OPENAI_API_KEY_PLACEHOLDER


def auth_configured() -> bool:
    return bool(SUPABASE_URL and SUPABASE_ANON_KEY)


def openai_client() -> OpenAI:
    if not api_key_configured():
        raise RuntimeError("Missing OPENAI_API_KEY")
    return OpenAI(api_key=OPENAI_API_KEY)


def supabase_client() -> Client:
    if not auth_configured():
        raise RuntimeError("Missing SUPABASE_URL or SUPABASE_ANON_KEY")
    return create_client(SUPABASE_URL, SUPABASE_ANON_KEY)


# -----------------------------
# Remote completion
# -----------------------------
def generate_reply(messages: List[Dict[str, str]]) -> str:
    client = openai_client()
    resp = client.chat.completions.create(
        model=OPENAI_MODEL,
        messages=messages,
        temperature=TEMPERATURE,
        max_tokens=MAX_OUTPUT_TOKENS,
    )
    return (resp.choices[0].message.content or "").strip()


def classify_error(exc: BaseException) -> Tuple[str, str]:
    # Provider errors only expose useful detail in their message text.
    text = str(exc)
    if "API key" in text:
        category = "auth"
    elif "quota" in text or "billing" in text:
        category = "quota"
    elif "network" in text or "fetch" in text:
        category = "network"
    else:
        category = "unknown"
    return category, ERROR_MESSAGES[category]


# -----------------------------
# Auth boundary
# -----------------------------
def _user_payload(user: Any) -> Dict[str, Any]:
    metadata = getattr(user, "user_metadata", None) or {}
    return {
        "id": str(getattr(user, "id", "")),
        "email": getattr(user, "email", "") or "",
        "full_name": metadata.get("full_name") or "",
    }


def current_user(request: Request) -> Optional[Dict[str, Any]]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token or not auth_configured():
        return None
    try:
        res = supabase_client().auth.get_user(token)
    except Exception as exc:
        logger.warning("Session rejected by auth service: %s", exc)
        return None
    user = getattr(res, "user", None)
    if user is None:
        return None
    return _user_payload(user)


def enforce_auth(request: Request) -> Dict[str, Any]:
    user = current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail=UNAUTHORIZED_MESSAGE)
    return user


# -----------------------------
# Conversation store
# -----------------------------
class ConversationManager:
    """Keeps every conversation in process memory, keyed by conversation id.

    Nothing survives a restart. Each conversation belongs to the user who
    started it and can only run one turn at a time.
    """

    _ID_RE = re.compile(r"[A-Za-z0-9-]{1,64}")

    def __init__(self, greeting: Optional[str] = GREETING):
        self.greeting = greeting
        self._sessions: Dict[str, ConversationSession] = {}
        self._owners: Dict[str, str] = {}
        self._busy: set = set()
        self._lock = threading.Lock()

    def _valid_id(self, conv_id: Optional[str]) -> bool:
        return bool(conv_id) and bool(self._ID_RE.fullmatch(conv_id))

    def create_session(self, user_id: str) -> Tuple[str, ConversationSession]:
        conv_id = str(uuid.uuid4())
        session = new_session(self.greeting)
        with self._lock:
            self._sessions[conv_id] = session
            self._owners[conv_id] = user_id
        logger.info("Started conversation %s for user %s", conv_id, user_id)
        return conv_id, session

    def load_session(self, conv_id: Optional[str], user_id: str) -> Optional[ConversationSession]:
        if not self._valid_id(conv_id):
            return None
        with self._lock:
            session = self._sessions.get(conv_id)
            owner = self._owners.get(conv_id)
        if session is None:
            return None
        if owner != user_id:
            raise PermissionError(conv_id)
        return session

    def get_or_create(self, conv_id: Optional[str], user_id: str) -> Tuple[str, ConversationSession]:
        session = self.load_session(conv_id, user_id)
        if session is None:
            return self.create_session(user_id)
        return conv_id, session

    def save_session(self, conv_id: str, session: ConversationSession) -> bool:
        with self._lock:
            # Dropped on logout while a turn was running.
            if conv_id not in self._owners:
                return False
            self._sessions[conv_id] = session
            return True

    def acquire(self, conv_id: str) -> bool:
        with self._lock:
            if conv_id in self._busy:
                return False
            self._busy.add(conv_id)
            return True

    def release(self, conv_id: str) -> None:
        with self._lock:
            self._busy.discard(conv_id)

    def drop_user(self, user_id: str) -> int:
        with self._lock:
            ids = [cid for cid, owner in self._owners.items() if owner == user_id]
            for cid in ids:
                self._sessions.pop(cid, None)
                self._owners.pop(cid, None)
                self._busy.discard(cid)
        return len(ids)


# -----------------------------
# FastAPI app
# -----------------------------
app = FastAPI(title="Profile Intake Chat (OpenAI + Supabase)")

conversation_manager = ConversationManager()


class ChatRequest(BaseModel):
    message: str
    conversation_id: Optional[str] = None


class ChatResponse(BaseModel):
    conversation_id: str
    answer: str
    error: Optional[str] = None
    progress: Dict[str, Any]


class LoginRequest(BaseModel):
    email: str
    password: str


class SignupRequest(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = None


def _conversation_payload(conv_id: str, session: ConversationSession) -> Dict[str, Any]:
    return {
        "conversation_id": conv_id,
        "turns": [t.to_dict() for t in session.turns],
        "progress": progress_snapshot(session),
    }


@app.on_event("startup")
def startup_event():
    reload_system_instructions()
    log_env_config()


@app.middleware("http")
async def require_session(request: Request, call_next):
    if request.url.path.startswith("/api/chat"):
        user = await run_in_threadpool(current_user, request)
        if user is None:
            logger.warning("Rejected unauthenticated request to %s", request.url.path)
            return JSONResponse(status_code=401, content={"detail": UNAUTHORIZED_MESSAGE})
    return await call_next(request)


@app.get("/", response_class=HTMLResponse)
def root():
    html = """
<!doctype html>
<html lang="es">
<head>
  <meta charset="utf-8" />
  <title>ChatApp</title>
  <style>
    :root {
      --bg: #f7f5ef;
      --panel: #ffffff;
      --ink: #1a1a1a;
      --muted: #5d5d5d;
      --line: #1d1d1d;
      --accent: #0f766e;
      --warn: #8a1f1f;
    }
    * { box-sizing: border-box; }
    body {
      font-family: "JetBrains Mono", "IBM Plex Mono", "Fira Mono", "Menlo", "Consolas", monospace;
      margin: 0;
      color: var(--ink);
      background: var(--bg);
    }
    header {
      padding: 16px 18px;
      background: var(--panel);
      border-bottom: 2px solid var(--line);
      display:flex;
      gap:12px;
      align-items:center;
    }
    header b { font-size: 12px; letter-spacing: 0.12em; text-transform: uppercase; }
    .spacer { flex: 1; }
    .pill { font-size: 11px; padding: 3px 8px; border: 2px solid var(--line); background: #f2f2f2; }
    .pill.connected { border-color: var(--accent); color: #0a4943; background: #e6f4f1; }
    .pill.disconnected { border-color: var(--warn); color: var(--warn); background: #fbeaea; }
    #wrap { max-width: 980px; margin: 0 auto; padding: 16px; }
    #chat {
      height: 62vh;
      overflow: auto;
      background: var(--panel);
      border: 2px solid var(--line);
      padding: 12px;
    }
    .msg { margin: 12px 0; display: flex; }
    .msg .bubble {
      padding: 10px 12px;
      max-width: 78%;
      white-space: pre-wrap;
      line-height: 1.35;
      border: 2px solid var(--line);
    }
    .user { justify-content: flex-end; }
    .user .bubble { background: #efefef; }
    .assistant { justify-content: flex-start; }
    .assistant .bubble { background: #ffffff; border-style: dashed; }
    #bar { display:flex; gap: 10px; margin-top: 12px; }
    input {
      flex: 1;
      padding: 10px 12px;
      border: 2px solid var(--line);
      background: #ffffff;
      color: var(--ink);
      outline: none;
    }
    input:focus { border-color: var(--accent); }
    button {
      padding: 10px 12px;
      border: 2px solid var(--line);
      background: #ffffff;
      cursor:pointer;
      text-transform: uppercase;
      letter-spacing: 0.1em;
      font-size: 11px;
    }
    button:disabled { color: #9a9a9a; cursor: not-allowed; }
    .muted { color: var(--muted); font-size:12px; }
    .panel { margin-bottom: 12px; border: 2px solid var(--line); background: var(--panel); padding: 10px; }
    .panel-title { font-size: 11px; letter-spacing: 0.12em; text-transform: uppercase; }
    .fields { display:flex; gap: 10px; margin-top: 8px; flex-wrap: wrap; }
    .field { border: 2px dashed #b8b8b8; padding: 6px 8px; font-size: 12px; }
    .field.done { border-style: solid; border-color: var(--accent); }
    #authMask {
      position: fixed;
      inset: 0;
      display: none;
      align-items: center;
      justify-content: center;
      background: rgba(247, 245, 239, 0.96);
      z-index: 1000;
    }
    #authMask.active { display: flex; }
    #authPanel { width: min(420px, 92vw); border: 2px solid var(--line); background: var(--panel); padding: 16px; }
    #authPanel .row { display:flex; margin-top: 10px; gap: 10px; }
    #authError { margin-top: 8px; color: var(--warn); font-size: 12px; }
  </style>
</head>
<body>
  <div id="authMask">
    <div id="authPanel">
      <span class="panel-title" id="authTitle">Iniciar sesión</span>
      <div class="row" id="nameRow" style="display:none"><input id="authName" placeholder="Nombre completo" /></div>
      <div class="row"><input id="authEmail" type="email" placeholder="Email" /></div>
      <div class="row"><input id="authPassword" type="password" placeholder="Contraseña" /></div>
      <div class="row">
        <button id="authBtn">Entrar</button>
        <button id="authToggle">Crear cuenta</button>
      </div>
      <div id="authError"></div>
    </div>
  </div>
  <header>
    <b>ChatApp</b>
    <span class="pill" id="connection">Conectando...</span>
    <span class="spacer"></span>
    <span class="muted" id="userEmail"></span>
    <button id="logoutBtn">Salir</button>
  </header>

  <div id="wrap">
    <div class="panel">
      <span class="panel-title">Información recopilada</span>
      <span class="muted" id="progressCount"></span>
      <div class="fields" id="fields"></div>
    </div>

    <div id="chat"></div>

    <div id="bar">
      <input id="input" placeholder="Escribe tu mensaje aquí..." />
      <button id="send">Enviar</button>
    </div>
  </div>

<script>
  let conversationId = null;
  let busy = false;
  let signupMode = false;

  function addMsg(isUser, text) {
    const chat = document.getElementById('chat');
    const div = document.createElement('div');
    div.className = 'msg ' + (isUser ? 'user' : 'assistant');
    const bubble = document.createElement('div');
    bubble.className = 'bubble';
    bubble.textContent = text;
    div.appendChild(bubble);
    chat.appendChild(div);
    chat.scrollTop = chat.scrollHeight;
    return div;
  }

  function renderProgress(progress) {
    if (!progress) return;
    document.getElementById('progressCount').textContent = ` ${progress.completed}/${progress.total}`;
    const el = document.getElementById('fields');
    el.innerHTML = '';
    Object.values(progress.fields).forEach(f => {
      const div = document.createElement('div');
      div.className = 'field' + (f.done ? ' done' : '');
      div.textContent = f.done ? `${f.label}: ${f.value}` : `${f.label}: pendiente`;
      el.appendChild(div);
    });
  }

  function setConnection(state) {
    const el = document.getElementById('connection');
    el.className = 'pill ' + state;
    el.textContent = state === 'connected' ? 'Conectado' : (state === 'disconnected' ? 'Desconectado' : 'Conectando...');
  }

  function showAuthMask(message) {
    document.getElementById('authMask').classList.add('active');
    document.getElementById('authError').textContent = message || '';
    document.getElementById('authEmail').focus();
  }

  function hideAuthMask() {
    document.getElementById('authMask').classList.remove('active');
    document.getElementById('authError').textContent = '';
  }

  async function fetchJson(url, options = {}) {
    const r = await fetch(url, { credentials: 'same-origin', ...options });
    if (r.status === 401) {
      showAuthMask('Debes iniciar sesión.');
      throw new Error('Unauthorized');
    }
    return r;
  }

  async function startConversation() {
    const r = await fetchJson('/api/chat/conversations', { method: 'POST' });
    const j = await r.json();
    conversationId = j.conversation_id;
    document.getElementById('chat').innerHTML = '';
    j.turns.forEach(t => addMsg(t.is_user, t.content));
    renderProgress(j.progress);
  }

  async function testConnection() {
    setConnection('testing');
    try {
      const r = await fetchJson('/api/chat/connection');
      const j = await r.json();
      setConnection(j.connected ? 'connected' : 'disconnected');
    } catch (err) {
      setConnection('disconnected');
    }
  }

  async function afterLogin(user) {
    document.getElementById('userEmail').textContent = user.email || '';
    hideAuthMask();
    await startConversation();
    testConnection();
  }

  async function attemptAuth() {
    const email = document.getElementById('authEmail').value.trim();
    const password = document.getElementById('authPassword').value;
    const fullName = document.getElementById('authName').value.trim();
    if (!email || !password) {
      showAuthMask('Introduce email y contraseña.');
      return;
    }
    const btn = document.getElementById('authBtn');
    btn.disabled = true;
    try {
      const url = signupMode ? '/api/auth/signup' : '/api/auth/login';
      const body = signupMode ? { email, password, full_name: fullName } : { email, password };
      const r = await fetch(url, {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify(body)
      });
      const j = await r.json();
      if (!r.ok) {
        showAuthMask(j.detail || 'No se pudo autenticar.');
        return;
      }
      if (signupMode) {
        toggleSignup();
        showAuthMask('Revisa tu email para confirmar la cuenta.');
        return;
      }
      document.getElementById('authPassword').value = '';
      await afterLogin(j.user);
    } catch (err) {
      showAuthMask('No se pudo autenticar.');
    } finally {
      btn.disabled = false;
    }
  }

  function toggleSignup() {
    signupMode = !signupMode;
    document.getElementById('nameRow').style.display = signupMode ? 'flex' : 'none';
    document.getElementById('authTitle').textContent = signupMode ? 'Crear cuenta' : 'Iniciar sesión';
    document.getElementById('authBtn').textContent = signupMode ? 'Registrarme' : 'Entrar';
    document.getElementById('authToggle').textContent = signupMode ? 'Ya tengo cuenta' : 'Crear cuenta';
  }

  async function send() {
    const inp = document.getElementById('input');
    const text = inp.value.trim();
    if (!text || busy) return;
    busy = true;
    document.getElementById('send').disabled = true;
    inp.value = '';
    addMsg(true, text);
    const thinking = addMsg(false, 'Pensando...');

    try {
      const r = await fetchJson('/api/chat', {
        method:'POST',
        headers:{'Content-Type':'application/json'},
        body: JSON.stringify({ message: text, conversation_id: conversationId })
      });
      const j = await r.json();
      thinking.remove();
      if (!r.ok) {
        addMsg(false, j.detail || 'Error al procesar tu mensaje. Intenta nuevamente.');
        return;
      }
      conversationId = j.conversation_id;
      addMsg(false, j.answer);
      renderProgress(j.progress);
      setConnection(j.error ? 'disconnected' : 'connected');
    } catch (err) {
      thinking.remove();
      addMsg(false, 'Lo siento, algo salió mal al contactar con el servidor.');
    } finally {
      busy = false;
      document.getElementById('send').disabled = false;
    }
  }

  document.getElementById('send').addEventListener('click', send);
  document.getElementById('input').addEventListener('keydown', (e) => {
    if (e.key === 'Enter' && !e.shiftKey) {
      e.preventDefault();
      send();
    }
  });
  document.getElementById('authBtn').addEventListener('click', attemptAuth);
  document.getElementById('authToggle').addEventListener('click', toggleSignup);
  document.getElementById('authPassword').addEventListener('keydown', (e) => {
    if (e.key === 'Enter') attemptAuth();
  });
  document.getElementById('logoutBtn').addEventListener('click', async () => {
    await fetch('/api/auth/logout', { method: 'POST', credentials: 'same-origin' });
    conversationId = null;
    document.getElementById('chat').innerHTML = '';
    document.getElementById('userEmail').textContent = '';
    showAuthMask('');
  });

  (async () => {
    const r = await fetch('/api/auth/user', { credentials: 'same-origin' });
    if (r.ok) {
      await afterLogin(await r.json());
    } else {
      showAuthMask('');
    }
  })();
</script>
</body>
</html>
        """
    return HTMLResponse(html)


@app.post("/api/auth/signup")
def signup(req: SignupRequest):
    email = req.email.strip()
    if len(email) < 5 or "@" not in email:
        raise HTTPException(status_code=400, detail="Email inválido")
    if len(req.password) < 6:
        raise HTTPException(status_code=400, detail="La contraseña debe tener al menos 6 caracteres")
    if not auth_configured():
        raise HTTPException(status_code=500, detail="Supabase no está configurado")

    try:
        supabase_client().auth.sign_up(
            {
                "email": email,
                "password": req.password,
                "options": {"data": {"full_name": req.full_name or ""}},
            }
        )
    except Exception as exc:
        logger.warning("Signup failed for %s: %s", email, exc)
        raise HTTPException(status_code=400, detail=str(exc))
    return {"ok": True, "message": "Revisa tu email para confirmar la cuenta"}


@app.post("/api/auth/login")
def login(req: LoginRequest, response: Response):
    if not auth_configured():
        raise HTTPException(status_code=500, detail="Supabase no está configurado")
    try:
        res = supabase_client().auth.sign_in_with_password(
            {"email": req.email.strip(), "password": req.password}
        )
    except Exception as exc:
        logger.warning("Login failed for %s: %s", req.email, exc)
        raise HTTPException(status_code=401, detail="Credenciales inválidas o email no verificado")

    session = getattr(res, "session", None)
    if session is None or getattr(res, "user", None) is None:
        raise HTTPException(status_code=401, detail="Credenciales inválidas o email no verificado")

    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session.access_token,
        max_age=getattr(session, "expires_in", None),
        httponly=True,
        secure=SESSION_COOKIE_SECURE,
        samesite="lax",
    )
    user = _user_payload(res.user)
    logger.info("User %s logged in", user["id"])
    return {"ok": True, "user": user}


@app.post("/api/auth/logout")
def logout(request: Request, response: Response):
    user = current_user(request)
    if user is not None:
        dropped = conversation_manager.drop_user(user["id"])
        logger.info("User %s logged out; dropped %d conversations", user["id"], dropped)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return {"ok": True}


@app.get("/api/auth/user")
def auth_user(request: Request):
    return enforce_auth(request)


@app.get("/api/status")
def status():
    return {
        "model": OPENAI_MODEL,
        "api_key_configured": api_key_configured(),
        "auth_configured": auth_configured(),
        "history_turns": CHAT_HISTORY_TURNS,
    }


@app.get("/api/chat/connection")
def connection(request: Request):
    enforce_auth(request)
    if not api_key_configured():
        return {"connected": False, "error": "config"}
    try:
        answer = generate_reply([{"role": "user", "content": CONNECTION_TEST_PROMPT}])
    except Exception as exc:
        category, _ = classify_error(exc)
        logger.warning("Connection test failed (%s): %s", category, exc)
        return {"connected": False, "error": category}
    return {"connected": len(answer) > 0, "error": None}


@app.post("/api/chat/conversations")
def create_conversation(request: Request):
    user = enforce_auth(request)
    conv_id, session = conversation_manager.create_session(user["id"])
    return _conversation_payload(conv_id, session)


@app.get("/api/chat/conversations/{conversation_id}")
def get_conversation(conversation_id: str, request: Request):
    user = enforce_auth(request)
    try:
        session = conversation_manager.load_session(conversation_id, user["id"])
    except PermissionError:
        session = None
    if session is None:
        raise HTTPException(status_code=404, detail="Conversación no encontrada")
    return _conversation_payload(conversation_id, session)


@app.post("/api/chat", response_model=ChatResponse)
def chat(request: Request, req: ChatRequest):
    user = enforce_auth(request)
    if not api_key_configured():
        raise HTTPException(status_code=500, detail=CONFIG_ERROR_MESSAGE)

    msg = (req.message or "").strip()
    if not msg:
        raise HTTPException(status_code=400, detail="message is required")

    try:
        conv_id, _ = conversation_manager.get_or_create(req.conversation_id, user["id"])
    except PermissionError:
        raise HTTPException(status_code=404, detail="Conversación no encontrada")

    if not conversation_manager.acquire(conv_id):
        raise HTTPException(status_code=409, detail="Ya hay un mensaje en proceso para esta conversación.")

    try:
        # Reload under the busy flag so a turn that finished meanwhile is not overwritten.
        session = conversation_manager.load_session(conv_id, user["id"])
        if session is None:
            raise HTTPException(status_code=404, detail="Conversación no encontrada")

        session, messages = begin_turn(session, msg, SYSTEM_INSTRUCTIONS, history_limit=CHAT_HISTORY_TURNS)
        conversation_manager.save_session(conv_id, session)

        error = None
        try:
            answer = generate_reply(messages)
        except Exception as exc:
            error, answer = classify_error(exc)
            logger.warning("Completion failed for %s (%s): %s", conv_id, error, exc)

        session = record_reply(session, answer)
        if not conversation_manager.save_session(conv_id, session):
            logger.info("Conversation %s was dropped before its turn finished", conv_id)
    finally:
        conversation_manager.release(conv_id)

    return ChatResponse(
        conversation_id=conv_id,
        answer=answer,
        error=error,
        progress=progress_snapshot(session),
    )


# Entry point for: python app.py
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="127.0.0.1", port=8000)
