"""
Onboarding Engine
AI Dispatch Runner.

Hands freshly uploaded documents to the AI verification provider in a
background thread, so an upload request returns as soon as the document
is stored.  Provider retries and timeouts happen off the request path.

Anything the thread could not dispatch stays PENDING with no
``ai_dispatched_at`` and is picked up by the ``ai_dispatch`` scheduled job.
"""

import logging
import threading

from flask import current_app

logger = logging.getLogger(__name__)

# In-memory registry of running dispatches (document_ref → Thread)
_running_dispatches: dict[str, threading.Thread] = {}


class AIDispatchRunner:
    """Runs ``dispatch_fn(document_ref)`` in a daemon thread with an app context."""

    def submit(self, document_ref: str, dispatch_fn) -> bool:
        """Start a dispatch for ``document_ref``.

        Returns False when a dispatch for the same document is still running.
        """
        running = _running_dispatches.get(document_ref)
        if running is not None and running.is_alive():
            return False

        app = current_app._get_current_object()
        t = threading.Thread(
            target=self._execute_in_background,
            args=(app, document_ref, dispatch_fn),
            name=f"ai-dispatch-{document_ref}",
            daemon=True,
        )
        _running_dispatches[document_ref] = t
        t.start()
        return True

    @staticmethod
    def running() -> list[str]:
        return [ref for ref, t in _running_dispatches.items() if t.is_alive()]

    # ── Internal ──────────────────────────────────────────────────────────

    @staticmethod
    def _execute_in_background(app, document_ref, dispatch_fn):
        with app.app_context():
            try:
                dispatch_fn(document_ref)
            except Exception:  # nothing above this thread to report to
                logger.exception(
                    "Background AI dispatch for %s failed; left for the ai_dispatch job", document_ref,
                    extra={"document_ref": document_ref, "provider": "ai_verification"},
                )
            finally:
                _running_dispatches.pop(document_ref, None)
