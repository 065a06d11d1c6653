from __future__ import annotations

# Wire protocol: one request dict in, one reply dict out.
#
# This layer is transport-free so it can be unit tested without a broker; the
# MQTT service only adds corr_id/reply_to plumbing around `handle()`.
#
# Replies:
#   {"type": "ok", "request": <type>, "result": ..., "log_id": <int|None>}
#   {"type": "error", "code": ..., "message": ..., "details"?: {...}}

import logging
from typing import Any, Callable

from .broadcaster import EventBroadcaster, Sender
from .coordinator import LedgerCoordinator
from .errors import ErrorResponse, LedgerError
from .models import PaymentStatus

logger = logging.getLogger(__name__)

MAX_SNAPSHOT = 500

COMMANDS = frozenset(
    {
        "register_student",
        "process_payment",
        "create_distribution",
        "verify_distribution",
        "issue_complimentary",
        "import_students",
        "update_student",
        "delete_student",
        "wipe_students",
        "wipe_distributions",
        "purge_logs",
    }
)


def _str(msg: dict[str, Any], key: str, default: str | None = None) -> str | None:
    value = msg.get(key, default)
    return value if isinstance(value, str) else default


def _int(msg: dict[str, Any], key: str, default: int) -> int:
    value = msg.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


class RequestHandler:
    """Dispatches decoded requests to the coordinator and the connection registry."""

    def __init__(
        self,
        coordinator: LedgerCoordinator,
        broadcaster: EventBroadcaster,
        *,
        sender_for: Callable[[str], Sender],
    ) -> None:
        self.coordinator = coordinator
        self.broadcaster = broadcaster
        self._sender_for = sender_for
        self._routes: dict[str, Callable[[dict[str, Any]], Any]] = {
            "join": self._join,
            "leave": self._leave,
            "heartbeat": self._heartbeat,
            "recent_logs": self._recent_logs,
            "get_student": self._get_student,
            "list_students": self._list_students,
            "student_distributions": self._student_distributions,
            "student_payments": self._student_payments,
            "student_logs": self._student_logs,
            "register_student": self._register_student,
            "process_payment": self._process_payment,
            "create_distribution": self._create_distribution,
            "verify_distribution": self._verify_distribution,
            "issue_complimentary": self._issue_complimentary,
            "import_students": self._import_students,
            "update_student": self._update_student,
            "delete_student": self._delete_student,
            "wipe_students": self._wipe_students,
            "wipe_distributions": self._wipe_distributions,
            "purge_logs": self._purge_logs,
        }

    def handle(self, msg: dict[str, Any]) -> dict[str, Any]:
        mtype = msg.get("type")
        route = self._routes.get(mtype) if isinstance(mtype, str) else None
        if route is None:
            return ErrorResponse("unknown_request", f"Unknown request type: {mtype!r}").to_message()

        try:
            result = route(msg)
        except LedgerError as e:
            return e.to_response().to_message()
        except (KeyError, TypeError, ValueError) as e:
            return ErrorResponse("bad_request", str(e)).to_message()
        except Exception as e:
            logger.exception("request %s failed", mtype)
            return ErrorResponse("internal_error", str(e)).to_message()

        if isinstance(result, dict) and result.get("type") == "error":
            return result
        log_id = self.coordinator.last_log_id if mtype in COMMANDS else None
        return {"type": "ok", "request": mtype, "result": result, "log_id": log_id}

    # -------------------- connections --------------------

    def _join(self, msg: dict[str, Any]) -> Any:
        station_id = _str(msg, "station_id")
        if not station_id:
            return ErrorResponse("bad_request", "station_id required").to_message()
        self.broadcaster.connect(station_id, self._sender_for(station_id))
        return {"station_id": station_id, "station_name": _str(msg, "station_name", station_id)}

    def _leave(self, msg: dict[str, Any]) -> Any:
        station_id = _str(msg, "station_id", "")
        return {"station_id": station_id, "left": self.broadcaster.disconnect(station_id)}

    def _heartbeat(self, msg: dict[str, Any]) -> Any:
        station_id = _str(msg, "station_id", "")
        if not self.broadcaster.touch(station_id):
            return ErrorResponse("unknown_station", "Station not connected; join again").to_message()
        return {"station_id": station_id}

    # -------------------- queries --------------------

    def _recent_logs(self, msg: dict[str, Any]) -> Any:
        limit = min(max(0, _int(msg, "limit", 50)), MAX_SNAPSHOT)
        return [entry.to_message() for entry in self.coordinator.recent_logs(limit)]

    def _get_student(self, msg: dict[str, Any]) -> Any:
        return self.coordinator.get_student(str(msg["student_id"])).to_message()

    def _list_students(self, msg: dict[str, Any]) -> Any:
        status = _str(msg, "status")
        students = self.coordinator.list_students(
            status=PaymentStatus(status.upper()) if status else None,
            limit=_int(msg, "limit", 1000),
        )
        return [s.to_message() for s in students]

    def _student_distributions(self, msg: dict[str, Any]) -> Any:
        return [d.to_message() for d in self.coordinator.distributions_for(str(msg["student_id"]))]

    def _student_payments(self, msg: dict[str, Any]) -> Any:
        return [p.to_message() for p in self.coordinator.payments_for(str(msg["student_id"]))]

    def _student_logs(self, msg: dict[str, Any]) -> Any:
        limit = min(max(0, _int(msg, "limit", 50)), MAX_SNAPSHOT)
        return [e.to_message() for e in self.coordinator.logs_for(str(msg["student_id"]), limit)]

    # -------------------- commands --------------------

    @staticmethod
    def _who(msg: dict[str, Any], default_station: str) -> dict[str, Any]:
        return {
            "operator": _str(msg, "operator", ""),
            "station": _str(msg, "station_name", default_station),
        }

    def _register_student(self, msg: dict[str, Any]) -> Any:
        student = self.coordinator.register_or_create(
            _str(msg, "student_id", ""),
            _str(msg, "name", ""),
            msg.get("owed", "0"),
            **self._who(msg, "Cash Station"),
        )
        return student.to_message()

    def _process_payment(self, msg: dict[str, Any]) -> Any:
        bills = msg.get("bills")
        if not isinstance(bills, dict):
            raise ValueError("bills must be an object")
        payment = self.coordinator.process_payment(
            _str(msg, "student_id", ""),
            bills,
            amount_due=msg.get("amount_due"),
            name=_str(msg, "name"),
            **self._who(msg, "Cash Station"),
        )
        return payment.to_message()

    def _create_distribution(self, msg: dict[str, Any]) -> Any:
        dist = self.coordinator.create_distribution(
            _str(msg, "student_id", ""),
            **self._who(msg, "Distribution Station"),
        )
        return dist.to_message()

    def _verify_distribution(self, msg: dict[str, Any]) -> Any:
        who = self._who(msg, "Checker Station")
        dist = self.coordinator.verify_distribution(
            msg.get("distribution_id"),
            verifier=who["operator"],
            station=who["station"],
        )
        return dist.to_message()

    def _issue_complimentary(self, msg: dict[str, Any]) -> Any:
        student, dist = self.coordinator.issue_complimentary(
            _str(msg, "name", ""),
            student_id=_str(msg, "student_id"),
            **self._who(msg, "Ruby Station"),
        )
        return {"student": student.to_message(), "distribution": dist.to_message()}

    def _import_students(self, msg: dict[str, Any]) -> Any:
        rows = msg.get("rows")
        if not isinstance(rows, list) or not rows:
            raise ValueError("rows must be a non-empty list")
        if not all(isinstance(r, dict) for r in rows):
            raise ValueError("every row must be an object")
        report = self.coordinator.import_students(rows, **self._who(msg, "Ruby Station"))
        return report.to_message()

    def _update_student(self, msg: dict[str, Any]) -> Any:
        changes = msg.get("changes")
        if not isinstance(changes, dict):
            raise ValueError("changes must be an object")
        student = self.coordinator.update_student(
            _str(msg, "student_id", ""),
            changes,
            **self._who(msg, "Ruby Station"),
        )
        return student.to_message()

    def _delete_student(self, msg: dict[str, Any]) -> Any:
        student = self.coordinator.delete_student(_str(msg, "student_id", ""), **self._who(msg, "Ruby Station"))
        return student.to_message()

    def _wipe_students(self, msg: dict[str, Any]) -> Any:
        return {"deleted": self.coordinator.wipe_students(**self._who(msg, "Ruby Station"))}

    def _wipe_distributions(self, msg: dict[str, Any]) -> Any:
        return {"deleted": self.coordinator.wipe_distributions(**self._who(msg, "Ruby Station"))}

    def _purge_logs(self, msg: dict[str, Any]) -> Any:
        return {"deleted": self.coordinator.purge_logs(**self._who(msg, "Ruby Station"))}
