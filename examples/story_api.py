"""Example story API guarded by quillguard.

Run with ``uvicorn examples.story_api:app --port 3000`` from the repo root.
"""

from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from quillguard.guard import Guard
from quillguard.middleware import ShieldMiddleware
from quillguard.policy import load_policy

policy = load_policy(Path(__file__).with_name("policy.yaml"))
guard = Guard(policy)

app = FastAPI()
app.add_middleware(ShieldMiddleware, guard=guard)

comments: list[dict[str, Any]] = []


@app.post("/api/register")
async def register(request: Request) -> Any:
    data = await request.json()
    email = data.get("email")
    if not email or not data.get("password"):
        guard.security_log.log_auth_attempt(False, None, email, request)
        return JSONResponse(status_code=400, content={"error": "Email e senha são obrigatórios"})
    guard.security_log.log_auth_attempt(True, email, email, request)
    return {"ok": True}


@app.post("/api/comments")
async def add_comment(request: Request) -> Any:
    data = await request.json()
    text = data.get("text", "")
    verdict = guard.security_log.classifier.classify(text)
    if any(verdict.values()):
        guard.security_log.log_malicious_input("comment", text, data.get("authorId"), request)
        return JSONResponse(status_code=400, content={"error": "Conteúdo não permitido"})
    comments.append({"text": text, "authorId": data.get("authorId")})
    return {"ok": True, "count": len(comments)}


@app.get("/api/comments")
async def list_comments() -> dict[str, Any]:
    return {"comments": comments}


@app.delete("/api/admin/users/{user_id}")
async def delete_user(user_id: str, request: Request) -> Any:
    admin_id = request.headers.get("x-admin-id")
    if admin_id is None:
        guard.security_log.log_privilege_escalation("anonymous", "delete-user", "reader", request)
        return JSONResponse(status_code=403, content={"error": "Acesso negado"})
    guard.security_log.log_admin_action(admin_id, "delete-user", user_id, request)
    return {"deleted": user_id}
