import os
import atexit
import logging
from datetime import datetime
from functools import wraps

from flask import Flask, jsonify, request, abort, current_app
from flask_cors import CORS
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .access import LoanQueries, Requester
from .config import Config
from .db import Database
from .errors import Forbidden, InvalidArgument, LibraryError, NotFound, PreconditionFailed
from .inventory import InventoryService
from .lending import LendingService
from .models import Role, User
from .overdue import OverdueSweeper

logger = logging.getLogger(__name__)


# ----------------- helpers: API key, identity, payloads -----------------

def require_api_key(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        sent_key = request.headers.get("X-API-Key")
        expected = current_app.config.get("SERVICE_API_KEY")
        if not expected or sent_key != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


def current_requester():
    """
    Identity comes from the gateway in front of us: X-User-Id is the
    borrower id, X-User-Role one of ADMIN / LIBRARIAN / STUDENT.
    """
    user_id = request.headers.get("X-User-Id")
    role = request.headers.get("X-User-Role")
    if not user_id or not role:
        abort(401, description="X-User-Id and X-User-Role headers are required")
    try:
        return Requester(user_id=int(user_id), role=Role(role.upper()))
    except ValueError:
        abort(401, description="Invalid X-User-Id or X-User-Role header")


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidArgument("Request body must be a JSON object")
    return data


def int_field(data, name):
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{name} must be an integer")
    return value


def iso(dt):
    return dt.isoformat() if dt else None


def loan_to_dict(loan):
    return {
        "loan_id": loan.id,
        "borrower_id": loan.user_id,
        "copy_id": loan.copy_id,
        "status": loan.status.value,
        "issue_date": iso(loan.issue_date),
        "due_date": iso(loan.due_date),
        "return_date": iso(loan.return_date),
        "renew_count": loan.renew_count,
    }


def copy_to_dict(copy):
    return {
        "id": copy.id,
        "book_id": copy.book_id,
        "status": copy.status.value,
        "created_at": iso(copy.created_at),
    }


def user_to_dict(user):
    return {
        "id": user.id,
        "external_id": user.external_id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
    }


# ----------------- app factory -----------------

def create_app(config_object=Config, clock=datetime.utcnow):
    app = Flask(__name__)
    app.config.from_object(config_object)
    CORS(app)

    logging.basicConfig(level=getattr(logging, app.config["LOG_LEVEL"].upper(), logging.INFO))

    db = Database(
        app.config["SQLALCHEMY_DATABASE_URI"],
        timeout=app.config["TRANSACTION_TIMEOUT"],
        echo=app.config["SQLALCHEMY_ECHO"],
    )
    # Create tables
    db.create_all()

    inventory = InventoryService(
        db, max_copies_per_request=app.config["MAX_COPIES_PER_REQUEST"]
    )
    lending = LendingService(
        db,
        clock=clock,
        loan_period_days=app.config["LOAN_PERIOD_DAYS"],
        renewal_days=app.config["RENEWAL_DAYS"],
        max_renewals=app.config["MAX_RENEWALS"],
        fine_per_day=app.config["FINE_PER_DAY"],
    )
    queries = LoanQueries(db, clock=clock)

    app.extensions["lending_db"] = db
    app.extensions["inventory"] = inventory
    app.extensions["lending"] = lending

    if app.config["OVERDUE_SWEEP_INTERVAL"] > 0:
        sweeper = OverdueSweeper(db, app.config["OVERDUE_SWEEP_INTERVAL"], clock=clock)
        sweeper.start()
        atexit.register(sweeper.stop)
        app.extensions["overdue_sweeper"] = sweeper

    @app.errorhandler(LibraryError)
    def handle_library_error(exc):
        level = logging.ERROR if exc.status_code >= 500 and not exc.retryable else logging.WARNING
        logger.log(level, "%s %s -> %s: %s", request.method, request.path, exc.code, exc.message)
        response = jsonify(exc.to_dict())
        response.status_code = exc.status_code
        if exc.retryable:
            response.headers["Retry-After"] = "1"
        return response

    # ----------------- health -----------------

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok", "service": "lending_service"})

    # ----------------- user endpoints -----------------

    @app.post("/api/users")
    @require_api_key
    def create_user():
        data = json_body()
        external_id = data.get("external_id")
        name = data.get("name")
        email = data.get("email")
        if not external_id or not name or not email:
            raise InvalidArgument("external_id, name, email are required")
        try:
            role = Role(str(data.get("role", Role.STUDENT.value)).upper())
        except ValueError:
            raise InvalidArgument("role must be one of ADMIN, LIBRARIAN, STUDENT")

        with db.atomic() as session:
            q = select(User).where(User.external_id == external_id)
            existing = session.execute(q).scalar_one_or_none()
            if existing:
                return jsonify(user_to_dict(existing)), 200

            user = User(external_id=external_id, name=name, email=email, role=role)
            session.add(user)
            try:
                session.flush()
            except IntegrityError:
                raise PreconditionFailed(f"Email {email} is already registered")
            logger.info("Created user %s (%s) as id %s", external_id, role.value, user.id)
            return jsonify(user_to_dict(user)), 201

    @app.get("/api/users/<external_id>")
    def get_user(external_id):
        with db.atomic() as session:
            q = select(User).where(User.external_id == external_id)
            user = session.execute(q).scalar_one_or_none()
            if not user:
                raise NotFound(f"User {external_id} not found")
            return jsonify(user_to_dict(user))

    # ----------------- book endpoints -----------------

    @app.post("/api/books")
    @require_api_key
    def create_or_update_book():
        """
        Librarian endpoint: upsert book by ISBN, optionally provisioning copies.
        """
        data = json_body()
        book, created = inventory.create_book(
            isbn=data.get("isbn"),
            title=data.get("title"),
            author=data.get("author"),
            publisher=data.get("publisher"),
            year=data.get("year"),
            copies=data.get("copies", 0),
        )
        return jsonify(book), 201 if created else 200

    @app.get("/api/books")
    def search_books():
        """
        Local search by title/author substring.
        """
        return jsonify(
            inventory.list_books(
                title=request.args.get("title"),
                author=request.args.get("author"),
            )
        )

    @app.get("/api/books/<int:book_id>")
    def get_book(book_id):
        return jsonify(inventory.get_book(book_id))

    @app.post("/api/books/<int:book_id>/copies")
    @require_api_key
    def add_copies(book_id):
        stats = inventory.add_copies(book_id, int_field(json_body(), "count"))
        return jsonify(stats), 201

    @app.get("/api/books/<int:book_id>/copies")
    def list_copies(book_id):
        found = inventory.list_copies(book_id, status=request.args.get("status"))
        return jsonify([copy_to_dict(c) for c in found])

    @app.delete("/api/books/<int:book_id>/copies")
    @require_api_key
    def remove_copies(book_id):
        stats = inventory.remove_copies(book_id, int_field(json_body(), "count"))
        return jsonify(stats)

    @app.get("/api/books/<int:book_id>/stats")
    def book_stats(book_id):
        return jsonify(inventory.get_stats(book_id))

    @app.post("/api/books/<int:book_id>/reconcile")
    @require_api_key
    def reconcile_book(book_id):
        drifted, stats = inventory.reconcile(book_id)
        return jsonify({"drifted": drifted, **stats})

    # ----------------- inventory endpoints -----------------

    @app.get("/api/inventory/summary")
    def inventory_summary():
        return jsonify(inventory.summary())

    @app.get("/api/copies/<int:copy_id>")
    def get_copy(copy_id):
        return jsonify(copy_to_dict(inventory.get_copy(copy_id)))

    @app.delete("/api/copies/<int:copy_id>")
    @require_api_key
    def remove_copy(copy_id):
        return jsonify(inventory.remove_copy(copy_id))

    @app.post("/api/copies/<int:copy_id>/lost")
    @require_api_key
    def report_lost(copy_id):
        return jsonify(inventory.report_lost(copy_id))

    # ----------------- loan endpoints -----------------

    @app.post("/api/loans/issue")
    def issue_book():
        requester = current_requester()
        data = json_body()
        borrower_id = data.get("borrower_id", requester.user_id)
        if isinstance(borrower_id, bool) or not isinstance(borrower_id, int):
            raise InvalidArgument("borrower_id must be an integer")
        if requester.is_self_scoped and borrower_id != requester.user_id:
            raise Forbidden("Students can only issue books to themselves")
        loan = lending.issue(borrower_id, int_field(data, "copy_id"))
        return jsonify(loan_to_dict(loan)), 201

    @app.post("/api/loans/return")
    def return_book():
        loan_id = int_field(json_body(), "loan_id")
        queries.get_loan(loan_id, current_requester())
        loan, charges = lending.return_loan(loan_id)
        return jsonify({**loan_to_dict(loan), **charges})

    @app.post("/api/loans/renew")
    def renew_book():
        loan_id = int_field(json_body(), "loan_id")
        queries.get_loan(loan_id, current_requester())
        loan = lending.renew(loan_id)
        return jsonify(loan_to_dict(loan))

    @app.get("/api/loans")
    def list_loans():
        loans = queries.list_loans(current_requester())
        return jsonify([loan_to_dict(loan) for loan in loans])

    @app.get("/api/loans/overdue")
    def list_overdue():
        loans = queries.list_overdue(current_requester())
        return jsonify([loan_to_dict(loan) for loan in loans])

    @app.get("/api/loans/active/<int:borrower_id>")
    def list_active(borrower_id):
        loans = queries.list_active_by_borrower(borrower_id, current_requester())
        return jsonify([loan_to_dict(loan) for loan in loans])

    @app.get("/api/loans/<int:loan_id>")
    def get_loan(loan_id):
        loan = queries.get_loan(loan_id, current_requester())
        return jsonify(loan_to_dict(loan))

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5001"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
