"""Dashboard web application for the telehealth booking service.

This module exposes a small, read-only Flask application with an HTML day
sheet (bookings plus remaining free slots) and JSON endpoints for
availability, bookings and the orchestrator task log. A missing or
unreadable task log is tolerated so the dashboard can run before the
scheduler has ever executed.
"""
from __future__ import annotations

from datetime import date
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, MutableMapping, Optional

from flask import Flask, Response, jsonify, render_template_string, request

from agents.appointments import BookingAgent, BookingResult
from orchestrator.main import LOG_PATH, TaskLogger, build_booking_agent
from scheduling.errors import BookingError
from scheduling.timeparse import DATE_FORMAT, parse_date

logger = logging.getLogger(__name__)


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return parse_date(value)
    except BookingError:
        return None


def collect_providers(appointments: Iterable[MutableMapping[str, Any]]) -> List[str]:
    seen = set()
    providers: List[str] = []
    for record in appointments:
        provider = str(record.get("provider") or "").strip()
        if provider and provider not in seen:
            providers.append(provider)
            seen.add(provider)
    return sorted(providers)


def load_task_log(log_path: Path) -> List[Dict[str, object]]:
    try:
        return TaskLogger(log_path).read_history()
    except (ValueError, OSError) as exc:
        logger.warning("Task log %s is unreadable: %s", log_path, exc)
        return []


def build_dashboard_context(
    agent: BookingAgent,
    target_date: date,
    provider: Optional[str],
    appointment_type: Optional[str] = None,
) -> MutableMapping[str, object]:
    day = target_date.strftime(DATE_FORMAT)
    all_appointments = agent.appointments_for_date(day)
    appointments = agent.appointments_for_date(day, provider) if provider else all_appointments
    availability = agent.get_available_slots(day, appointment_type)

    return {
        "filters": {
            "date": day,
            "provider": provider or "",
            "appointment_type": availability.appointment_type,
            "available_providers": collect_providers(all_appointments),
            "appointment_types": agent.registry.names(),
        },
        "appointments": appointments,
        "availability": availability.to_dict(),
    }


dashboard_template = """
<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\">
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
    <meta http-equiv=\"refresh\" content=\"60\">
    <title>Telehealth Booking Dashboard</title>
    <link
      href=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css\"
      rel=\"stylesheet\"
      integrity=\"sha384-QWTKZyjpPEjISv5WaRU9OFeRpok6YctnYmDr5pNlyT2bRjXh0JMhjY6hW+ALEwIH\"
      crossorigin=\"anonymous\"
    >
  </head>
  <body class=\"bg-light\">
    <nav class=\"navbar navbar-expand-lg navbar-dark bg-primary\">
      <div class=\"container-fluid\">
        <a class=\"navbar-brand\" href=\"#\">Telehealth Booking Dashboard</a>
      </div>
    </nav>
    <main class=\"container my-4\">
      <section class=\"mb-4\">
        <form class=\"row gy-2 gx-3 align-items-center\" method=\"get\" action=\"/dashboard\" aria-label=\"Dashboard filters\">
          <div class=\"col-md-3\">
            <label for=\"filter-date\" class=\"form-label\">Date</label>
            <input id=\"filter-date\" name=\"date\" type=\"date\" class=\"form-control\" value=\"{{ filters.date }}\">
          </div>
          <div class=\"col-md-3\">
            <label for=\"filter-provider\" class=\"form-label\">Provider</label>
            <select id=\"filter-provider\" name=\"provider\" class=\"form-select\">
              <option value=\"\">All Providers</option>
              {% for option in filters.available_providers %}
                <option value=\"{{ option }}\" {% if option == filters.provider %}selected{% endif %}>{{ option }}</option>
              {% endfor %}
            </select>
          </div>
          <div class=\"col-md-3\">
            <label for=\"filter-type\" class=\"form-label\">Appointment Type</label>
            <select id=\"filter-type\" name=\"type\" class=\"form-select\">
              {% for option in filters.appointment_types %}
                <option value=\"{{ option }}\" {% if option == filters.appointment_type %}selected{% endif %}>{{ option }}</option>
              {% endfor %}
            </select>
          </div>
          <div class=\"col-md-3 align-self-end\">
            <button type=\"submit\" class=\"btn btn-primary w-100\">Apply Filters</button>
          </div>
        </form>
      </section>
      <section class=\"row g-4\">
        <div class=\"col-lg-8\">
          <div class=\"card shadow-sm h-100\">
            <div class=\"card-header bg-success text-white\">Appointments on {{ filters.date }}</div>
            <div class=\"card-body\">
              {% if appointments %}
                <div class=\"table-responsive\">
                  <table class=\"table table-sm table-striped\">
                    <thead>
                      <tr>
                        <th scope=\"col\">Time</th>
                        <th scope=\"col\">Patient</th>
                        <th scope=\"col\">Type</th>
                        <th scope=\"col\">Provider</th>
                        <th scope=\"col\">Status</th>
                        <th scope=\"col\">Confirmation</th>
                      </tr>
                    </thead>
                    <tbody>
                      {% for appointment in appointments %}
                        <tr>
                          <td>{{ appointment.time }}</td>
                          <td>{{ appointment.patient_name }}</td>
                          <td>{{ appointment.appointment_type }}</td>
                          <td>{{ appointment.provider or '-' }}</td>
                          <td>{{ appointment.status }}</td>
                          <td>{{ appointment.confirmation_number }}</td>
                        </tr>
                      {% endfor %}
                    </tbody>
                  </table>
                </div>
              {% else %}
                <p class=\"text-muted mb-0\">No appointments found for the selected filters.</p>
              {% endif %}
            </div>
          </div>
        </div>
        <div class=\"col-lg-4\">
          <div class=\"card shadow-sm h-100\">
            <div class=\"card-header bg-info text-white\">
              Open {{ availability.appointment_type }} Slots ({{ availability.available_slots|length }}/{{ availability.total_slots }})
            </div>
            <div class=\"card-body\">
              {% if availability.available_slots %}
                <ul class=\"list-inline mb-0\">
                  {% for slot in availability.available_slots %}
                    <li class=\"list-inline-item badge text-bg-light border\">{{ slot }}</li>
                  {% endfor %}
                </ul>
              {% else %}
                <p class=\"text-muted mb-0\">No open slots on this date.</p>
              {% endif %}
            </div>
          </div>
        </div>
      </section>
    </main>
    <script
      src=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/js/bootstrap.bundle.min.js\"
      integrity=\"sha384-YvpcrYf0tY3lHB60NNkmXc5s9fDVZLESaAA55NDzOxhy9GkcIdslK1eN7N6jIeHz\"
      crossorigin=\"anonymous\"
    ></script>
  </body>
</html>
"""


def _error_response(exc: BookingError, status: int = 400):
    return jsonify(BookingResult.from_error(exc).to_dict()), status


def create_app(agent: Optional[BookingAgent] = None, task_log_path: Optional[Path] = None) -> Flask:
    app = Flask(__name__)
    booking_agent = agent or build_booking_agent()
    log_path = task_log_path or LOG_PATH

    @app.route("/tasks", methods=["GET"])
    def tasks() -> Response:
        """Return orchestrator task log entries as JSON."""
        return jsonify(load_task_log(log_path))

    @app.route("/api/availability", methods=["GET"])
    def availability():
        target_date = request.args.get("date") or date.today().strftime(DATE_FORMAT)
        try:
            report = booking_agent.get_available_slots(
                target_date,
                request.args.get("type") or None,
                request.args.get("timezone") or None,
            )
        except BookingError as exc:
            return _error_response(exc)
        return jsonify(report.to_dict())

    @app.route("/api/appointments", methods=["GET"])
    def appointments():
        target_date = request.args.get("date") or date.today().strftime(DATE_FORMAT)
        try:
            records = booking_agent.appointments_for_date(target_date, request.args.get("provider") or None)
        except BookingError as exc:
            return _error_response(exc)
        return jsonify({"date": target_date, "count": len(records), "appointments": records})

    @app.route("/dashboard", methods=["GET"])
    def dashboard() -> str:
        target_date = parse_iso_date(request.args.get("date")) or date.today()
        provider = request.args.get("provider") or None
        context = build_dashboard_context(booking_agent, target_date, provider, request.args.get("type") or None)
        return render_template_string(dashboard_template, **context)

    return app


if __name__ == "__main__":
    create_app().run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "5000")),
        debug=False,
    )
