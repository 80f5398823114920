import inspect
import asyncio
import logging
import os
import time
from utils.core.log import setup_logging
from utils.core.warnings_config import configure_warning_filters
from flask import Flask, request, jsonify
from utils.core.slack import SlackActivityLogger, SlackActivityMeta
from utils.llm.gcp_credentials import ensure_gcp_credentials_from_vault

configure_warning_filters()
ensure_gcp_credentials_from_vault()

from tools.bid_level.bid_level import (
    bid_level_main,
    bid_level_report_main,
    bid_level_worker_main,
)

app = Flask(__name__)
setup_logging()
logger = logging.getLogger("BidLevelBE")

"""
API for the bid leveling engine
"""


_LAST = {"status": None, "t": 0.0}
GET_INFO_EVERY_SEC = 300


def _should_log_get(current_status: str) -> bool:
    now = time.monotonic()
    if _LAST["status"] != current_status or now - _LAST["t"] >= GET_INFO_EVERY_SEC:
        _LAST["status"] = current_status
        _LAST["t"] = now
        return True
    return False


def handle(tool_func=None, *args, **kwargs):
    """
    Universal wrapper for all endpoint tools.

    - Expects the caller (each route) to pass ALL parameters required
      by the tool function through *args / **kwargs.
    - Builds the standard response envelope
      {userId, status, error, tokens, toolData}.
    - Leaves whatever status the tool returns, or falls back to
      "done"/"error".
    """
    req_json = kwargs.pop("request_body", {})
    remote_ip = request.remote_addr
    user_id = req_json.get("userId", "")
    tool_name = tool_func.__name__ if tool_func else "unknown_tool"
    job_id = req_json.get("jobId", "unknown")
    user_name = req_json.get("userName", "")
    method = request.method

    context = {
        "tool_name": tool_name,
        "ip_address": remote_ip,
        "job_id": job_id,
        "request_type": method,
        "user_name": user_name,
    }
    logger = logging.LoggerAdapter(logging.getLogger("BidLevelBE"), context)

    if method == "POST":
        logger.info("Process started")
    elif method not in ("GET",):
        logger.info("Invoke via %s: %s (user=%s)", method, tool_name, user_id)

    response = {
        "userId": user_id,  # always echo back
        "status": "",  # will be set below
        "error": "",
        "tokens": 0,  # default 0 when unknown
        "toolData": {},  # populated on success
    }

    call_kwargs = dict(kwargs)
    sig = inspect.signature(tool_func) if tool_func else None
    if sig:
        if "remote_ip" in sig.parameters:
            call_kwargs["remote_ip"] = remote_ip
        if "request_method" in sig.parameters:
            call_kwargs["request_method"] = method

    try:
        # invoke the actual tool function
        if asyncio.iscoroutinefunction(tool_func):
            result = asyncio.run(tool_func(*args, **call_kwargs))
        else:
            result = tool_func(*args, **call_kwargs)

    except Exception as exc:
        logger.exception(f"{tool_name} crashed")
        response["status"] = "error"
        response["error"] = str(exc)
        return jsonify(response), 500

    # normalise tool output
    #
    # We expect each tool to return:
    #   {
    #       "status": "queued" | "running" | "success" | "failed" | "error",
    #       "tokens": <int>,          # optional
    #       ... <arbitrary payload>   # everything else = toolData
    #   }
    # If the tool returns plain data (not a dict), we still wrap it.
    if isinstance(result, dict):
        # pull optional keys out; the rest becomes toolData
        response["tokens"] = result.pop("tokens", 0)
        response["status"] = result.pop("status", "done")

        if response["status"] == "error" and "error" in result:
            # tool reported its own error
            response["error"] = result.pop("error")
        else:
            response["toolData"] = result
    else:
        # non-dict return -> treat as successful payload
        response["status"] = "done" if result else "error"
        response["toolData"] = result

    if method == "GET":
        current_status = response.get("status") or (
            "error" if response.get("error") else "done"
        )
        if _should_log_get(current_status):
            logger.info("Status check: %s", current_status)

    # done
    return jsonify(response), 200


def bad_request(msg: str, user_id: str = ""):
    envelope = {
        "userId": user_id,
        "status": "error",
        "error": msg,
        "tokens": 0,
        "toolData": {},
    }
    return jsonify(envelope), 400


def get_payload() -> dict:
    """
    Return the request payload as a dict.
    - POST   – accept plaintext JSON.
    - GET    – flat query params.
    """
    if request.method == "GET":
        return request.args.to_dict(flat=True) if request.args else {}

    # POST requests - accept plaintext JSON
    return request.get_json(force=True, silent=True) or {}


def ping_status_tool(
    job_id: str | None = None,
    request_method: str | None = None,
    remote_ip: str | None = None,
    user_name: str | None = None,
) -> dict:
    """
    Healthcheck tool.
    - Returns {"status": "pong"} (wrapped by handle()).
    - Logs an INFO line into activity.log.
    - Sends a Slack activity message.
    """
    from utils.core.log import pid_tool_logger, get_logger, set_logger

    base_logger = pid_tool_logger(job_id, "ping")
    set_logger(
        base_logger,
        tool_name="ping",
        job_id=job_id or "unknown",
        ip_address=remote_ip or "no_ip",
        request_type=request_method or "N/A",
    )
    logger = get_logger()
    logger.info("Ping received; replying with pong")

    # Slack activity (never fail the endpoint if Slack is misconfigured)
    try:
        s = SlackActivityLogger(
            SlackActivityMeta(job_id=job_id or "-", tool="PING", user=user_name or "unknown")
        )
        s.start()
        s.sub("PONG")
        s.done()
    except Exception as slack_exc:
        # Log Slack issues to activity.log but do not break /ping
        logger.error(f"Slack logging skipped or failed: {slack_exc}")

    return {"status": "pong"}


@app.route("/ping", methods=["GET", "POST"])
def PING():
    data = get_payload()
    return handle(
        tool_func=ping_status_tool,
        request_body=data,
        job_id=data.get("jobId"),
        user_name=data.get("userName") or data.get("user"),
    )


@app.route("/bid-level", methods=["GET", "POST"])
def BID_LEVEL():
    """
    Bid leveling endpoint
    - GET - poll a processing job by processingJobId
    - POST - queue one division (or subdivision) of a job for leveling
    """
    data = get_payload()
    user_id = data.get("userId", "")

    if request.method == "GET":
        processing_job_id = data.get("processingJobId")
        if not processing_job_id:
            return bad_request("processingJobId is required", user_id)
        return handle(
            tool_func=bid_level_main,
            request_body=data,
            processing_job_id=processing_job_id,
            user_name=data.get("userName", ""),
        )

    job_id = data.get("jobId")
    division_code = data.get("division") or data.get("divisionCode")
    subdivision_id = data.get("subdivisionId")
    if not job_id:
        return bad_request("jobId is required", user_id)
    if not (division_code or subdivision_id):
        return bad_request("division or subdivisionId is required", user_id)

    meta = data.get("meta") or {}
    if not isinstance(meta, dict):
        return bad_request("meta must be an object", user_id)

    return handle(
        tool_func=bid_level_main,
        request_body=data,
        job_id=job_id,
        company_id=data.get("companyId"),
        division_code=division_code,
        subdivision_id=subdivision_id,
        meta=meta,
        user_name=data.get("userName", ""),
        user_id=user_id or None,
    )


@app.route("/bid-level/report", methods=["GET"])
def BID_LEVEL_REPORT():
    data = get_payload()
    job_id = data.get("jobId")
    division_code = data.get("division") or data.get("divisionCode")
    subdivision_id = data.get("subdivisionId")

    if not job_id:
        return bad_request("jobId is required", data.get("userId", ""))
    if not (division_code or subdivision_id):
        return bad_request("division or subdivisionId is required", data.get("userId", ""))

    return handle(
        tool_func=bid_level_report_main,
        request_body=data,
        job_id=job_id,
        division_code=division_code,
        subdivision_id=subdivision_id,
    )


@app.route("/bid-level/worker", methods=["POST"])
def BID_LEVEL_WORKER():
    data = get_payload()
    return handle(tool_func=bid_level_worker_main, request_body=data)


if __name__ == "__main__":
    if os.path.exists("crt.pem") and os.path.exists("key.pem"):
        app.run(host="0.0.0.0", port=5000, ssl_context=("crt.pem", "key.pem"))
    else:
        app.run(host="0.0.0.0", port=5000)
