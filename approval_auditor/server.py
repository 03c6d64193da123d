"""
server.py
=========

HTTP entrypoint for the approval auditor. A single paid entrypoint,
``POST /entrypoints/audit/invoke``, runs :func:`audit_wallet` on
``{"input": {"wallet": ..., "chains": [...]}}``.

Payment is handled outside this service. ``create_app`` accepts a
``payment_gate`` callable that sees every invoke request before the audit
runs; if it returns anything other than ``None`` that value is sent back as
the response (typically a 402 challenge) and the audit is skipped.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from dotenv import find_dotenv, load_dotenv
from flask import Flask, jsonify, request

from approval_auditor.approval_auditor import (
    AuditorConfig,
    ConfigurationError,
    InvalidAuditInput,
    audit_wallet,
    load_config,
)

AGENT_NAME = "approval-risk-auditor"
AGENT_VERSION = "0.1.0"
AGENT_DESCRIPTION = "Flag unlimited or stale ERC-20 / NFT approvals"

AUDIT_ENTRYPOINT = {
    "key": "audit",
    "description": "Audit a wallet for risky ERC-20 and NFT approvals.",
    "input": {
        "wallet": "Wallet address (e.g., 0x... or ENS name)",
        "chains": "Array of chain names (e.g., ['eth-mainnet', 'polygon-mainnet'])",
    },
}

logger = logging.getLogger("approval_auditor.server")

PaymentGate = Callable[[Any], Optional[Any]]


def create_app(
    config: Optional[AuditorConfig] = None,
    payment_gate: Optional[PaymentGate] = None,
    audit_fn: Callable[..., Any] = audit_wallet,
) -> Flask:
    """Build the Flask application serving the audit entrypoint."""
    if config is None:
        config = load_config()
    app = Flask(__name__)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    @app.route("/entrypoints", methods=["GET"])
    def entrypoints():
        return jsonify({
            "name": AGENT_NAME,
            "version": AGENT_VERSION,
            "description": AGENT_DESCRIPTION,
            "entrypoints": [AUDIT_ENTRYPOINT],
        })

    @app.route("/entrypoints/audit/invoke", methods=["POST"])
    def invoke_audit():
        if payment_gate is not None:
            challenge = payment_gate(request)
            if challenge is not None:
                return challenge

        body = request.get_json(force=True, silent=True)
        if not isinstance(body, dict):
            return jsonify({"error": "Request body must be valid JSON"}), 400
        payload = body.get("input")
        if not isinstance(payload, dict):
            return jsonify({"error": "Missing 'input' object"}), 400

        try:
            result = audit_fn(payload.get("wallet"), payload.get("chains"), config=config)
        except InvalidAuditInput as e:
            return jsonify({"error": "invalid_input", "detail": str(e)}), 400
        except ConfigurationError as e:
            logger.error(f"Audit rejected: {e}")
            return jsonify({"error": "configuration_error", "detail": str(e)}), 500

        return jsonify({"status": "succeeded", "output": result.as_dict()})

    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )
    load_dotenv(find_dotenv(usecwd=True))
    config = load_config()
    app = create_app(config)
    logger.info(f"Agent server listening on http://localhost:{config.port}")
    app.run(host="0.0.0.0", port=config.port, debug=False)


if __name__ == "__main__":
    main()
