"""FastAPI app exposing FocusLock endpoints and a simple monitoring UI."""

import asyncio
from dataclasses import asdict
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field, field_validator

from focuslock.api.services.runtime import Runtime, build_runtime
from focuslock.api.services.store import LAST_SNAPSHOT
from focuslock.config import load_env_local, load_settings
from focuslock.model.messages import (
    AcknowledgeClick,
    DebugAlarm,
    DismissAlarms,
    SubmitAnswer,
)
from focuslock.model.models import AttentionSnapshot
from focuslock.watchers.logger import DequeHandler, logger, setup_logging

# FastAPIアプリケーションのインスタンスを作成
app = FastAPI(
    title="FocusLock",
    description="On-task / drowsiness monitoring with locking alerts",
)

# グローバルな状態管理
STATE: dict[str, Any] = {
    "runtime": None,
    "log_handler": None,
}


def _runtime() -> Runtime:
    runtime: Runtime | None = STATE["runtime"]
    if runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not started")
    return runtime


def _get_pump_log_tail(log_dir: str, max_lines: int = 200) -> list[str]:
    """カメラ pump のログ末尾を取得する. 無ければ空."""
    path = Path(log_dir) / "pump.log"
    if not path.exists():
        return []
    try:
        lines = path.read_text(encoding="utf-8", errors="ignore").splitlines()
    except OSError:
        return []
    return lines[-max_lines:]


# --- Pydanticモデル定義 ---


class SessionUpdate(BaseModel):
    """作業内容の宣言. 空文字はクリア."""

    work_task: str = ""


class ViewEvent(BaseModel):
    """companion から送られるビュー (タブ) のイベント."""

    event: Literal["updated", "activated", "removed"]
    view_id: int
    url: str = ""
    title: str = ""
    active: bool = False
    status: str | None = None
    idle_ms: int | None = None

    @field_validator("idle_ms")
    @classmethod
    def idle_must_not_be_negative(cls, v: int | None) -> int | None:
        if v is not None and v < 0:
            msg = "idle_ms must not be negative"
            raise ValueError(msg)
        return v


class NetworkEvent(BaseModel):
    url: str
    resource_type: str | None = None

    @field_validator("url")
    @classmethod
    def url_must_not_be_empty(cls, v: str) -> str:
        """URLが存在すること"""
        if not v or not v.strip():
            msg = "url must not be empty"
            raise ValueError(msg)
        return v


class AttentionPayload(BaseModel):
    """カメラ pump からの覚醒状態."""

    timestamp: float
    state: Literal["awake", "noddingOff", "sleeping"]
    confidence: float
    metrics: dict[str, float] = Field(default_factory=dict)

    @field_validator("confidence")
    @classmethod
    def confidence_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            msg = "confidence must be between 0 and 1"
            raise ValueError(msg)
        return v


class AnswerRequest(BaseModel):
    answer: str


# --- アプリケーションのライフサイクルイベント ---


# Deprecated on_event usage is temporarily retained for simplicity.
@app.on_event("startup")  # pyright: ignore[reportDeprecated]
async def startup_event() -> None:
    """起動時に Runtime を組み立てて actor とポーリングを開始する."""
    if STATE["runtime"] is None:
        load_env_local()
        settings = load_settings()
        setup_logging(settings.log_dir)
        STATE["runtime"] = build_runtime(settings)
    runtime: Runtime = STATE["runtime"]
    handler = DequeHandler(runtime.logs)
    logger.addHandler(handler)
    STATE["log_handler"] = handler
    await runtime.start()


@app.on_event("shutdown")  # pyright: ignore[reportDeprecated]
async def shutdown_event() -> None:
    runtime: Runtime | None = STATE["runtime"]
    if runtime is not None:
        await runtime.stop()
    handler = STATE["log_handler"]
    if handler is not None:
        logger.removeHandler(handler)
        STATE["log_handler"] = None


# --- APIエンドポイント定義 ---


@app.post("/session")
async def update_session(req: SessionUpdate) -> dict[str, Any]:
    """ユーザーの作業内容を宣言する."""
    session = _runtime().set_session(req.work_task)
    return {"ok": True, "session": asdict(session) if session else None}


@app.get("/session")
async def get_session() -> dict[str, Any]:
    session = _runtime().session_context()
    return {"session": asdict(session) if session else None}


@app.post("/events/view")
async def ingest_view_event(event: ViewEvent) -> dict[str, Any]:
    """ビューの更新 / 切り替え / 削除. 評価サイクルのトリガーにもなる."""
    runtime = _runtime()
    host = runtime.host
    if event.idle_ms is not None:
        host.report_idle(event.idle_ms)

    evaluated = False
    allowed = True
    if event.event == "removed":
        host.remove_view(event.view_id)
    elif event.event == "activated":
        if event.url:
            host.update_view(event.view_id, event.url, event.title)
        allowed = host.activate(event.view_id)
        if allowed:
            evaluated = runtime.request_evaluation("activation")
    else:
        host.update_view(event.view_id, event.url, event.title, active=event.active)
        if event.status == "complete" and host.active_view_id == event.view_id:
            evaluated = runtime.request_evaluation("navigation")
    return {"ok": True, "allowed": allowed, "evaluation_requested": evaluated}


@app.post("/events/network")
async def ingest_network_event(event: NetworkEvent) -> dict[str, Any]:
    recorded = _runtime().activity.record(event.url, event.resource_type)
    return {"ok": True, "recorded": recorded}


@app.post("/attention")
async def ingest_attention(payload: AttentionPayload) -> dict[str, Any]:
    """カメラ pump から覚醒状態を受け取る."""
    snapshot = AttentionSnapshot(
        timestamp=payload.timestamp,
        state=payload.state,
        confidence=payload.confidence,
        metrics=dict(payload.metrics),
    )
    _runtime().receive_attention(snapshot)
    return {"ok": True}


@app.post("/attention/debug")
async def trigger_debug_alarm() -> dict[str, Any]:
    runtime = _runtime()
    await runtime.alert_actor.request(DebugAlarm())
    return {"ok": True, "alert": runtime.alerts.status()}


@app.get("/snapshot")
async def get_snapshot() -> dict[str, Any]:
    return {"snapshot": _runtime().store.get(LAST_SNAPSHOT)}


@app.get("/status")
async def get_current_status() -> dict[str, Any]:
    """現在のシステム状態を取得する."""
    runtime = _runtime()
    status = runtime.status()
    available = False
    if runtime.gateway is not None:
        available = await asyncio.to_thread(runtime.gateway.is_available)
    status["gateway_available"] = available
    return status


@app.get("/control")
async def drain_control_messages() -> dict[str, Any]:
    """companion 向けに溜まった制御メッセージを返す."""
    return {"messages": _runtime().host.drain()}


@app.get("/alert")
async def get_alert() -> dict[str, Any]:
    return _runtime().alerts.status()


@app.post("/alert/ack")
async def acknowledge_alert() -> dict[str, Any]:
    runtime = _runtime()
    clicks = await runtime.alert_actor.request(AcknowledgeClick())
    return {"ok": True, "clicks": clicks, "alert": runtime.alerts.status()}


@app.post("/alert/answer")
async def answer_alert(req: AnswerRequest) -> dict[str, Any]:
    runtime = _runtime()
    correct = await runtime.alert_actor.request(SubmitAnswer(req.answer))
    return {"ok": True, "correct": correct, "alert": runtime.alerts.status()}


@app.post("/alert/dismiss")
async def dismiss_alarms() -> dict[str, Any]:
    runtime = _runtime()
    await runtime.alert_actor.request(DismissAlarms())
    return {"ok": True, "alert": runtime.alerts.status()}


# --- 無効化 / 再有効化 ---


@app.post("/disable/start")
async def start_disable() -> dict[str, Any]:
    """無効化プロトコルを開始する. 規定数の問題を続けて解く必要がある."""
    runtime = _runtime()
    if runtime.disabled:
        return {"ok": True, "disabled": True}
    challenge = runtime.disable_challenge.start()
    return {
        "ok": True,
        "disabled": False,
        "prompt": challenge.prompt,
        "remaining": runtime.disable_challenge.remaining,
    }


@app.post("/disable/answer")
async def answer_disable(req: AnswerRequest) -> dict[str, Any]:
    runtime = _runtime()
    guard = runtime.disable_challenge
    if not guard.active:
        return {"ok": True, "correct": False, "disabled": runtime.disabled}
    correct = guard.submit(req.answer)
    if correct and guard.completed:
        runtime.disable()
    return {
        "ok": True,
        "correct": correct,
        "error": guard.error,
        "prompt": guard.current.prompt if guard.current else None,
        "remaining": guard.remaining,
        "disabled": runtime.disabled,
    }


@app.post("/disable/cancel")
async def cancel_disable() -> dict[str, Any]:
    _runtime().disable_challenge.cancel()
    return {"ok": True}


@app.post("/enable")
async def enable() -> dict[str, Any]:
    """再有効化は無条件."""
    runtime = _runtime()
    runtime.enable()
    return {"ok": True, "disabled": runtime.disabled}


# --- 設定 / 分析 ---


@app.get("/settings/attention")
async def get_attention_settings() -> dict[str, Any]:
    return _runtime().attention_settings().to_dict()


@app.put("/settings/attention")
async def put_attention_settings(stored: dict[str, Any]) -> dict[str, Any]:
    return _runtime().update_attention_settings(stored).to_dict()


@app.get("/analytics/summary")
async def get_analytics_summary(days: int = Query(7, ge=1, le=365)) -> dict[str, Any]:
    return _runtime().recorder.summarize(days_back=days)


@app.delete("/analytics")
async def clear_analytics() -> dict[str, Any]:
    _runtime().recorder.clear()
    return {"ok": True}


# --- モニタリング用エンドポイント ---


@app.get("/api/monitoring_data")
async def get_monitoring_data() -> dict[str, Any]:
    """モニタリングUIに最新データを提供する."""
    runtime = _runtime()
    return {
        "snapshot": runtime.store.get(LAST_SNAPSHOT),
        "alert": runtime.alerts.status(),
        "attention": (
            asdict(runtime.latest_attention) if runtime.latest_attention else None
        ),
        "disabled": runtime.disabled,
        "logs": list(runtime.logs),
        "pump_logs": _get_pump_log_tail(runtime.settings.log_dir),
    }


@app.get("/monitoring", response_class=HTMLResponse)
async def get_monitoring_page() -> HTMLResponse:
    """モニタリング用のWebページを返す."""
    html_content = """
    <!DOCTYPE html>
    <html lang="ja">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>FocusLock Monitor</title>
        <style>
            body { font-family: sans-serif; line-height: 1.6; padding: 20px; background-color: #f4f4f4; color: #333; }
            .container { max-width: 1200px; margin: auto; background: #fff; padding: 20px; border-radius: 8px; box-shadow: 0 0 10px rgba(0,0,0,0.1); }
            h1, h2 { color: #555; }
            .grid-container { display: grid; grid-template-columns: 1fr 1fr; gap: 20px; }
            .grid-item { background: #f9f9f9; padding: 15px; border-radius: 5px; }
            pre { background: #eee; padding: 10px; border-radius: 5px; white-space: pre-wrap; word-wrap: break-word; }
            #logs, #pump-logs { height: 250px; overflow-y: scroll; border: 1px solid #ddd; padding: 10px; }
            .off_task { color: #c0392b; font-weight: bold; }
            .on_task { color: #27ae60; font-weight: bold; }
        </style>
    </head>
    <body>
        <div class="container">
            <h1>FocusLock Monitor</h1>
            <div class="grid-container">
                <div class="grid-item">
                    <h2>Current State</h2>
                    <div id="state">No data yet.</div>
                    <h2>Snapshot</h2>
                    <pre id="snapshot">No data yet.</pre>
                </div>
                <div class="grid-item">
                    <h2>Alert</h2>
                    <pre id="alert">No data yet.</pre>
                    <h2>Attention</h2>
                    <pre id="attention">No data yet.</pre>
                </div>
                <div class="grid-item">
                    <h2>API Logs</h2>
                    <div id="logs"></div>
                </div>
                <div class="grid-item">
                    <h2>Pump Logs</h2>
                    <div id="pump-logs"></div>
                </div>
            </div>
        </div>
        <script>
            async function fetchData() {
                try {
                    const response = await fetch('/api/monitoring_data');
                    const data = await response.json();

                    const stateDiv = document.getElementById('state');
                    if (data.disabled) {
                        stateDiv.textContent = 'Monitoring disabled';
                    } else if (data.snapshot) {
                        const pct = (data.snapshot.confidence * 100).toFixed(1);
                        stateDiv.innerHTML = `<span class="${data.snapshot.state}">${data.snapshot.state}</span> (${pct}%)`;
                    }

                    document.getElementById('snapshot').textContent = JSON.stringify(data.snapshot, null, 2);
                    document.getElementById('alert').textContent = JSON.stringify(data.alert, null, 2);
                    document.getElementById('attention').textContent = JSON.stringify(data.attention, null, 2);

                    const logsDiv = document.getElementById('logs');
                    logsDiv.innerHTML = data.logs.map(log => `<div>${log}</div>`).join('');
                    logsDiv.scrollTop = logsDiv.scrollHeight;

                    const pumpLogsDiv = document.getElementById('pump-logs');
                    pumpLogsDiv.innerHTML = (data.pump_logs || []).map(log => `<div>${log}</div>`).join('');
                    pumpLogsDiv.scrollTop = pumpLogsDiv.scrollHeight;
                } catch (error) {
                    console.error('Error fetching monitoring data:', error);
                }
            }

            setInterval(fetchData, 3000); // Update every 3 seconds
            window.onload = fetchData; // Initial fetch
        </script>
    </body>
    </html>
    """  # noqa: E501
    return HTMLResponse(content=html_content)


def serve() -> None:
    """uvicorn で API サーバーを起動する (127.0.0.1:5577)."""
    load_env_local()
    settings = load_settings()
    parsed = urlparse(settings.api_url)
    uvicorn.run(
        app,
        host=parsed.hostname or "127.0.0.1",
        port=parsed.port or 5577,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
