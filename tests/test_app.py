from datetime import UTC, date, datetime, timedelta
from types import SimpleNamespace

import pytest

import backoffice as backoffice_module
from backoffice import (
    Customer,
    Employee,
    EmployeePerformanceMetrics,
    Notification,
    NotificationConfig,
    Package,
    Payment,
    SmsGatewayClient,
    SmsGatewayError,
    Ticket,
    TicketFeedback,
    TicketNote,
    TicketStatusHistory,
    User,
    create_app,
    create_notification,
    db,
    ensure_performance_metrics,
    has_permission,
    rows_to_csv,
)

TEST_ADMIN_EMAIL = "admin@example.com"
TEST_ADMIN_PASSWORD = "AdminPass123!"
TECH_PASSWORD = "TechPass123!"
JSON_HEADERS = {"Accept": "application/json"}


@pytest.fixture
def app(tmp_path):
    test_db_path = tmp_path / "test.db"

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{test_db_path}",
            "ADMIN_EMAIL": TEST_ADMIN_EMAIL,
            "ADMIN_PASSWORD": TEST_ADMIN_PASSWORD,
            "ADMIN_NAME": "Ops Admin",
        }
    )

    yield app

    with app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, email: str, password: str, follow_redirects: bool = True):
    return client.post(
        "/login",
        data={"email": email, "password": password},
        follow_redirects=follow_redirects,
    )


def login_admin(client, follow_redirects: bool = True):
    return login(client, TEST_ADMIN_EMAIL, TEST_ADMIN_PASSWORD, follow_redirects)


def create_employee(
    app,
    email: str,
    *,
    name: str = "Field Tech",
    role: str = "TECHNICIAN",
    password: str = TECH_PASSWORD,
    can_handle_tickets: bool = True,
    handling_status: str = "AVAILABLE",
    max_concurrent_tickets: int = 5,
) -> int:
    with app.app_context():
        user = User(email=email)
        user.set_password(password)
        employee = Employee(
            user=user,
            name=name,
            role=role,
            hire_date=date.today(),
            can_handle_tickets=can_handle_tickets,
            handling_status=handling_status,
            max_concurrent_tickets=max_concurrent_tickets,
        )
        db.session.add_all([user, employee])
        ensure_performance_metrics(employee)
        db.session.commit()
        return employee.id


def create_package(app, name: str = "Fiber 50", price_cents: int = 350000, duration="MONTHLY") -> int:
    with app.app_context():
        package = Package(name=name, speed="50 Mbps", price_cents=price_cents, duration=duration)
        db.session.add(package)
        db.session.commit()
        return package.id


def create_customer(
    app,
    name: str = "Jane Doe",
    *,
    email: str | None = "jane@example.com",
    phone: str | None = None,
    status: str = "ACTIVE",
    package_id: int | None = None,
    address: str | None = None,
) -> int:
    with app.app_context():
        customer = Customer(
            name=name,
            email=email,
            phone=phone,
            status=status,
            package_id=package_id,
            address=address,
        )
        db.session.add(customer)
        db.session.commit()
        return customer.id


def create_ticket(client, customer_id: int, assigned_to_id: int | None = None, **overrides) -> int:
    payload = {
        "title": "No internet connection",
        "description": "Customer reports the connection dropped this morning.",
        "priority": "HIGH",
        "category": "NETWORK_ISSUES",
        "customer_id": customer_id,
    }
    if assigned_to_id is not None:
        payload["assigned_to_id"] = assigned_to_id
    payload.update(overrides)
    response = client.post("/tickets", json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["ticket"]["id"]


def ticket_count_for(app, employee_id: int) -> int:
    with app.app_context():
        return db.session.get(Employee, employee_id).current_ticket_count


def admin_id(app) -> int:
    with app.app_context():
        return Employee.query.filter_by(role="ADMIN").first().id


def test_default_admin_is_seeded(app):
    with app.app_context():
        admin = Employee.query.filter_by(role="ADMIN").one()
        assert admin.email == TEST_ADMIN_EMAIL
        assert admin.name == "Ops Admin"
        assert admin.user.check_password(TEST_ADMIN_PASSWORD)
        assert NotificationConfig.query.count() == 1


def test_dashboard_requires_login(client):
    response = client.get("/dashboard")
    assert response.status_code == 302
    assert "/login" in response.headers["Location"]

    json_response = client.get("/dashboard", headers=JSON_HEADERS)
    assert json_response.status_code == 401


def test_admin_can_login_and_view_dashboard(client):
    response = login_admin(client)
    assert response.status_code == 200
    assert b"Welcome back, Ops Admin!" in response.data
    assert b"Dashboard" in response.data


def test_login_rejects_wrong_password_and_inactive_employee(app, client):
    response = login(client, TEST_ADMIN_EMAIL, "wrong-password")
    assert b"Invalid email or password." in response.data

    create_employee(app, "former@example.com", name="Former Staff")
    with app.app_context():
        employee = Employee.query.join(User).filter(User.email == "former@example.com").one()
        employee.is_active = False
        db.session.commit()

    response = login(client, "former@example.com", TECH_PASSWORD)
    assert b"Invalid email or password." in response.data


def test_customer_crud_through_forms(app, client):
    login_admin(client)
    package_id = create_package(app)

    response = client.post(
        "/customers",
        data={
            "name": "Jane Doe",
            "email": "jane@example.com",
            "phone": "+62 812-3456-7890",
            "location": "Bandung",
            "status": "ACTIVE",
            "package_id": str(package_id),
        },
        follow_redirects=True,
    )
    assert response.status_code == 200
    assert b"Customer Jane Doe added." in response.data

    with app.app_context():
        customer = Customer.query.filter_by(email="jane@example.com").one()
        customer_id = customer.id
        assert customer.package_id == package_id
        assert customer.payment_status == "PAID"

    response = client.post(
        f"/customers/{customer_id}/update",
        data={"name": "Jane Smith", "email": "jane@example.com", "status": "SUSPENDED"},
        follow_redirects=True,
    )
    assert b"Customer updated." in response.data

    listing = client.get("/customers?search=Smith")
    assert b"Jane Smith" in listing.data

    response = client.post(f"/customers/{customer_id}/delete", follow_redirects=True)
    assert b"Customer Jane Smith removed." in response.data
    with app.app_context():
        assert db.session.get(Customer, customer_id) is None


def test_customer_validation_errors(client):
    login_admin(client)

    response = client.post("/customers", json={"name": "J"})
    assert response.status_code == 400
    errors = response.get_json()["errors"]
    assert errors["name"] == "Name must be at least 2 characters"
    assert errors["contact"] == "Either email or phone is required"

    response = client.post("/customers", data={"name": "Jane Doe", "phone": "12ab"})
    assert response.status_code == 400
    assert b"Invalid phone number format" in response.data


def test_customer_delete_blocked_by_active_tickets(app, client):
    login_admin(client)
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id)

    response = client.post(f"/customers/{customer_id}/delete", json={})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Cannot delete customer with 1 active tickets"

    response = client.post(f"/tickets/{ticket_id}/status", json={"status": "CLOSED"})
    assert response.status_code == 200

    response = client.post(f"/customers/{customer_id}/delete", json={})
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Ticket, ticket_id) is None
        assert TicketStatusHistory.query.filter_by(ticket_id=ticket_id).count() == 0


def test_package_create_rejects_duplicate_name(client):
    login_admin(client)

    response = client.post(
        "/packages",
        json={"name": "Fiber 100", "speed": "100 Mbps", "price": "500000", "duration": "MONTHLY"},
    )
    assert response.status_code == 201
    assert response.get_json()["package"]["price"] == 500000.0

    duplicate = client.post(
        "/packages",
        json={"name": "fiber 100", "speed": "100 Mbps", "price": "1", "duration": "MONTHLY"},
    )
    assert duplicate.status_code == 400
    assert duplicate.get_json()["errors"]["name"] == "A package with this name already exists"

    invalid = client.post(
        "/packages", json={"name": "Cheap", "speed": "1 Mbps", "price": "-5", "duration": "WEEKLY"}
    )
    errors = invalid.get_json()["errors"]
    assert errors["price"] == "Price must be greater than 0"
    assert errors["duration"] == "Duration must be MONTHLY or YEARLY"


def test_delete_package_with_active_customers_is_blocked(app, client):
    login_admin(client)
    package_id = create_package(app)
    active_id = create_customer(app, package_id=package_id)
    inactive_id = create_customer(
        app, "Old Account", email="old@example.com", status="INACTIVE", package_id=package_id
    )

    response = client.post(f"/packages/{package_id}/delete", json={})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Cannot delete package with 1 active customers"

    with app.app_context():
        db.session.get(Customer, active_id).status = "INACTIVE"
        db.session.commit()

    response = client.post(f"/packages/{package_id}/delete", json={})
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Package, package_id) is None
        assert db.session.get(Customer, inactive_id).package_id is None


def test_package_toggle_and_listing_counts(app, client):
    login_admin(client)
    package_id = create_package(app)
    create_customer(app, package_id=package_id)

    response = client.post(f"/packages/{package_id}/toggle", json={})
    assert response.get_json()["package"]["is_active"] is False

    listing = client.get("/packages", headers=JSON_HEADERS).get_json()
    assert listing["packages"][0]["customer_count"] == 1

    page = client.get("/packages")
    assert b"Fiber 50" in page.data


def test_employee_create_validates_and_creates_metrics(app, client):
    login_admin(client)

    response = client.post(
        "/employees",
        json={"name": "New Tech", "email": "newtech@example.com", "role": "TECHNICIAN", "hire_date": "2024-01-15"},
    )
    assert response.status_code == 400
    assert response.get_json()["errors"]["password"] == "Password must be at least 8 characters"

    response = client.post(
        "/employees",
        json={
            "name": "New Tech",
            "email": "newtech@example.com",
            "password": "Secret123!",
            "role": "TECHNICIAN",
            "hire_date": "2024-01-15",
            "can_handle_tickets": True,
            "max_concurrent_tickets": 3,
        },
    )
    assert response.status_code == 201
    payload = response.get_json()["employee"]
    assert payload["handling_status"] == "AVAILABLE"
    assert payload["performance"]["total_tickets_resolved"] == 0

    duplicate = client.post(
        "/employees",
        json={
            "name": "Other",
            "email": "newtech@example.com",
            "password": "Secret123!",
            "role": "HR",
            "hire_date": "2024-01-15",
        },
    )
    assert duplicate.get_json()["errors"]["email"] == "Email already exists"

    response = login(app.test_client(), "newtech@example.com", "Secret123!")
    assert b"Welcome back, New Tech!" in response.data


def test_employee_delete_rules(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=tech_id)

    response = client.post(f"/employees/{admin_id(app)}/delete", json={})
    assert response.get_json()["error"] == "You cannot delete your own account."

    response = client.post(f"/employees/{tech_id}/delete", json={})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Cannot delete employee with 1 active tickets"

    client.post(f"/tickets/{ticket_id}/status", json={"status": "IN_PROGRESS"})
    client.post(f"/tickets/{ticket_id}/status", json={"status": "RESOLVED"})

    response = client.post(f"/employees/{tech_id}/delete", json={})
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Employee, tech_id) is None
        assert User.query.filter_by(email="tech@example.com").count() == 0
        assert EmployeePerformanceMetrics.query.filter_by(employee_id=tech_id).count() == 0
        ticket = db.session.get(Ticket, ticket_id)
        assert ticket.assigned_to_id is None


def test_ticket_create_with_assignee_updates_counter_and_notifies(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)

    ticket_id = create_ticket(client, customer_id, assigned_to_id=tech_id)

    with app.app_context():
        ticket = db.session.get(Ticket, ticket_id)
        assert ticket.status == "OPEN"
        assert ticket.assigned_to_id == tech_id
        assert ticket.status_history[0].status == "OPEN"
        assert db.session.get(Employee, tech_id).current_ticket_count == 1
        assignment = Notification.query.filter_by(
            type="ASSIGNMENT", recipient_type="EMPLOYEE", recipient_id=tech_id
        ).one()
        assert assignment.title == "New Ticket Assignment"


def test_ticket_validation_errors(app, client):
    login_admin(client)
    hr_id = create_employee(app, "hr@example.com", role="HR", can_handle_tickets=False)
    customer_id = create_customer(app)

    response = client.post(
        "/tickets",
        json={
            "title": "Bad",
            "description": "short",
            "customer_id": customer_id,
            "priority": "CRITICAL",
            "assigned_to_id": hr_id,
        },
    )
    assert response.status_code == 400
    errors = response.get_json()["errors"]
    assert errors["title"] == "Title must be at least 5 characters"
    assert errors["description"] == "Description must be at least 10 characters"
    assert errors["priority"] == "Invalid priority"
    assert errors["assigned_to_id"] == "Selected employee cannot handle tickets"


def test_assigning_ticket_to_offline_technician_is_rejected(app, client):
    login_admin(client)
    tech_id = create_employee(app, "offline@example.com", handling_status="OFFLINE")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id)

    response = client.post(f"/tickets/{ticket_id}/assign", json={"technician_id": tech_id})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Technician is currently offline"

    with app.app_context():
        ticket = db.session.get(Ticket, ticket_id)
        assert ticket.assigned_to_id is None
        assert ticket.status == "OPEN"
    assert ticket_count_for(app, tech_id) == 0


def test_assign_respects_capacity(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com", max_concurrent_tickets=1)
    customer_id = create_customer(app)
    first = create_ticket(client, customer_id)
    second = create_ticket(client, customer_id)

    response = client.post(f"/tickets/{first}/assign", json={"technician_id": tech_id})
    assert response.status_code == 200
    assert response.get_json()["ticket"]["status"] == "IN_PROGRESS"

    response = client.post(f"/tickets/{second}/assign", json={"technician_id": tech_id})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Technician has reached maximum concurrent tickets (1)"

    response = client.post(
        f"/tickets/{first}/assign", json={"technician_id": tech_id, "reason": "Confirming"}
    )
    assert response.status_code == 200
    assert ticket_count_for(app, tech_id) == 1

    missing = client.post(f"/tickets/{second}/assign", json={"technician_id": 9999})
    assert missing.status_code == 404


def test_reassign_moves_workload_between_technicians(app, client):
    login_admin(client)
    first_tech = create_employee(app, "first@example.com", name="First Tech")
    second_tech = create_employee(app, "second@example.com", name="Second Tech")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=first_tech)

    response = client.post(
        f"/tickets/{ticket_id}/assign",
        json={"technician_id": second_tech, "reason": "Closer to site"},
    )
    assert response.status_code == 200
    assert ticket_count_for(app, first_tech) == 0
    assert ticket_count_for(app, second_tech) == 1

    with app.app_context():
        contents = [note.content for note in TicketNote.query.filter_by(ticket_id=ticket_id)]
        assert "Ticket reassigned from First Tech to Second Tech. Reason: Closer to site" in contents

    response = client.post(f"/tickets/{ticket_id}/unassign", json={})
    assert response.status_code == 200
    assert response.get_json()["ticket"]["status"] == "OPEN"
    assert ticket_count_for(app, second_tech) == 0

    response = client.post(f"/tickets/{ticket_id}/unassign", json={})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Ticket is not assigned to anyone"


def test_status_transitions_follow_workflow(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=tech_id)

    response = client.post(f"/tickets/{ticket_id}/status", json={"status": "RESOLVED"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Cannot change status from OPEN to RESOLVED"

    assert client.post(f"/tickets/{ticket_id}/status", json={"status": "IN_PROGRESS"}).status_code == 200
    response = client.post(
        f"/tickets/{ticket_id}/status",
        json={"status": "RESOLVED", "resolution_notes": "Replaced the ONT"},
    )
    assert response.status_code == 200
    ticket_payload = response.get_json()["ticket"]
    assert ticket_payload["completed_at"] is not None
    assert ticket_payload["resolution_time_hours"] is not None
    assert ticket_count_for(app, tech_id) == 0

    with app.app_context():
        metrics = db.session.get(Employee, tech_id).performance_metrics
        assert metrics.total_tickets_resolved == 1
        assert metrics.tickets_resolved_this_month == 1

    response = client.post(f"/tickets/{ticket_id}/status", json={"status": "IN_PROGRESS"})
    assert response.status_code == 200
    assert response.get_json()["ticket"]["completed_at"] is None
    assert ticket_count_for(app, tech_id) == 1

    client.post(f"/tickets/{ticket_id}/status", json={"status": "RESOLVED"})
    client.post(f"/tickets/{ticket_id}/status", json={"status": "CLOSED"})
    response = client.post(f"/tickets/{ticket_id}/status", json={"status": "OPEN"})
    assert response.get_json()["error"] == "Cannot change status from CLOSED to OPEN"

    with app.app_context():
        metrics = db.session.get(Employee, tech_id).performance_metrics
        assert metrics.total_tickets_resolved == 2
        statuses = [entry.status for entry in TicketStatusHistory.query.filter_by(ticket_id=ticket_id)]
        assert statuses.count("RESOLVED") == 2


def test_monthly_resolution_count_resets_in_a_new_month(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=tech_id)
    client.post(f"/tickets/{ticket_id}/status", json={"status": "IN_PROGRESS"})

    first_of_month = date.today().replace(day=1)
    last_month = first_of_month - timedelta(days=1)
    with app.app_context():
        metrics = db.session.get(Employee, tech_id).performance_metrics
        metrics.total_tickets_resolved = 3
        metrics.tickets_resolved_this_month = 7
        metrics.last_updated = datetime(last_month.year, last_month.month, 15, tzinfo=UTC)
        db.session.commit()

    response = client.post(f"/tickets/{ticket_id}/status", json={"status": "RESOLVED"})
    assert response.status_code == 200

    with app.app_context():
        metrics = db.session.get(Employee, tech_id).performance_metrics
        assert metrics.tickets_resolved_this_month == 1
        assert metrics.total_tickets_resolved == 4


def test_busy_technician_becomes_available_when_idle(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=tech_id)

    response = client.post(
        f"/employees/{tech_id}/handling-status", json={"handling_status": "BUSY"}
    )
    assert response.get_json()["employee"]["handling_status"] == "BUSY"

    client.post(
        f"/tickets/{ticket_id}/complete",
        json={"status": "RESOLVED", "resolution_notes": "Router rebooted"},
    )
    with app.app_context():
        assert db.session.get(Employee, tech_id).handling_status == "AVAILABLE"


def test_complete_ticket_requires_assignee_or_admin(app, client):
    login_admin(client)
    owner_id = create_employee(app, "owner@example.com", name="Owner Tech")
    create_employee(app, "other@example.com", name="Other Tech")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=owner_id)

    other_client = app.test_client()
    login(other_client, "other@example.com", TECH_PASSWORD)
    response = other_client.post(
        f"/tickets/{ticket_id}/complete", json={"resolution_notes": "Fixed it"}
    )
    assert response.status_code == 403
    assert (
        response.get_json()["error"]
        == "Only the assigned technician or an administrator can complete this ticket"
    )

    owner_client = app.test_client()
    login(owner_client, "owner@example.com", TECH_PASSWORD)
    response = owner_client.post(f"/tickets/{ticket_id}/complete", json={})
    assert response.get_json()["error"] == "Resolution notes are required"

    response = owner_client.post(
        f"/tickets/{ticket_id}/complete", json={"resolution_notes": "Spliced the drop cable"}
    )
    assert response.status_code == 200
    assert response.get_json()["ticket"]["status"] == "RESOLVED"

    with app.app_context():
        notes = [note.content for note in TicketNote.query.filter_by(ticket_id=ticket_id)]
        assert "**Resolution:** Spliced the drop cable" in notes
        assert db.session.get(Employee, owner_id).performance_metrics.total_tickets_resolved == 1
    assert ticket_count_for(app, owner_id) == 0

    response = client.post(
        f"/tickets/{ticket_id}/complete", json={"status": "CLOSED", "resolution_notes": "Confirmed"}
    )
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Employee, owner_id).performance_metrics.total_tickets_resolved == 1

    response = client.post(
        f"/tickets/{ticket_id}/complete", json={"status": "CLOSED", "resolution_notes": "Again"}
    )
    assert response.get_json()["error"] == "Ticket is already closed"


def test_feedback_updates_rating_and_rejects_duplicates(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)
    first = create_ticket(client, customer_id, assigned_to_id=tech_id)
    second = create_ticket(client, customer_id, assigned_to_id=tech_id)

    early = client.post(f"/feedback/{first}", json={"rating": 5})
    assert early.status_code == 400
    assert early.get_json()["errors"]["form"] == (
        "Feedback can only be submitted for resolved or closed tickets"
    )

    for ticket_id in (first, second):
        client.post(
            f"/tickets/{ticket_id}/complete",
            json={"status": "RESOLVED", "resolution_notes": "Fixed"},
        )

    public_client = app.test_client()
    response = public_client.post(f"/feedback/{first}", data={"rating": "4", "comment": "Quick fix"})
    assert response.status_code == 200
    assert b"Thank you for your feedback!" in response.data

    duplicate = public_client.post(f"/feedback/{first}", data={"rating": "5"})
    assert duplicate.status_code == 400
    assert b"Feedback has already been submitted for this ticket" in duplicate.data

    response = client.post(f"/tickets/{second}/feedback", json={"rating": 2, "comment": "Slow"})
    assert response.status_code == 201

    invalid = client.post(f"/tickets/{second}/feedback", json={"rating": 9})
    assert invalid.get_json()["errors"]["rating"] == "Rating must be between 1 and 5"

    with app.app_context():
        metrics = db.session.get(Employee, tech_id).performance_metrics
        assert metrics.customer_rating == pytest.approx(3.0)
        assert TicketFeedback.query.count() == 2
        escalation = Notification.query.filter_by(type="ESCALATION").one()
        assert escalation.recipient_id == admin_id(app)
        assert "Low customer satisfaction rating: 2/5 stars" in escalation.message
        internal = TicketNote.query.filter_by(ticket_id=second, is_internal=True).all()
        assert any("Customer feedback received: 2/5 stars" in note.content for note in internal)


def test_note_permissions(app, client):
    login_admin(client)
    owner_id = create_employee(app, "owner@example.com", name="Owner Tech")
    create_employee(app, "other@example.com", name="Other Tech")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=owner_id)

    owner_client = app.test_client()
    login(owner_client, "owner@example.com", TECH_PASSWORD)
    response = owner_client.post(
        f"/tickets/{ticket_id}/notes", json={"content": "Checked the splitter", "is_internal": True}
    )
    assert response.status_code == 201
    note_id = response.get_json()["note"]["id"]

    empty = owner_client.post(f"/tickets/{ticket_id}/notes", json={"content": ""})
    assert empty.get_json()["errors"]["content"] == "Note content is required"

    other_client = app.test_client()
    login(other_client, "other@example.com", TECH_PASSWORD)
    assert other_client.post(f"/tickets/{ticket_id}/notes", json={"content": "Hi"}).status_code == 403
    assert other_client.post(f"/tickets/{ticket_id}/notes/{note_id}/delete", json={}).status_code == 403

    notes = other_client.get(f"/tickets/{ticket_id}/notes", headers=JSON_HEADERS).get_json()["notes"]
    assert any(note["content"] == "Checked the splitter" for note in notes)

    assert owner_client.post(f"/tickets/{ticket_id}/notes/{note_id}/delete", json={}).status_code == 200
    with app.app_context():
        assert db.session.get(TicketNote, note_id) is None


def test_technician_permissions(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)
    other_ticket = create_ticket(client, customer_id)

    tech_client = app.test_client()
    login(tech_client, "tech@example.com", TECH_PASSWORD)

    assert tech_client.get("/customers", headers=JSON_HEADERS).status_code == 200
    assert tech_client.get("/packages", headers=JSON_HEADERS).status_code == 403
    assert tech_client.post("/customers", json={"name": "Someone", "email": "s@example.com"}).status_code == 403
    assert tech_client.get("/payments", headers=JSON_HEADERS).status_code == 403
    assert (
        tech_client.post(f"/tickets/{other_ticket}/status", json={"status": "IN_PROGRESS"}).status_code
        == 403
    )

    own_ticket = create_ticket(tech_client, customer_id, assigned_to_id=tech_id)
    response = tech_client.post(f"/tickets/{own_ticket}/status", json={"status": "IN_PROGRESS"})
    assert response.status_code == 200

    with app.app_context():
        technician = db.session.get(Employee, tech_id)
        assert has_permission(technician, "tickets", "update", {"assigned_to_id": tech_id})
        assert not has_permission(technician, "tickets", "update", {"assigned_to_id": None})
        assert has_permission(technician, "reports", "read", {"scope": "own"})
        assert not has_permission(technician, "reports", "read", {"scope": "hr"})


def test_ticket_edit_reassigns_and_resolves(app, client):
    login_admin(client)
    first_tech = create_employee(app, "first@example.com", name="First Tech")
    second_tech = create_employee(app, "second@example.com", name="Second Tech")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=first_tech)

    response = client.post(
        f"/tickets/{ticket_id}/update",
        json={
            "title": "No internet connection",
            "description": "Customer reports the connection dropped this morning.",
            "priority": "URGENT",
            "category": "NETWORK_ISSUES",
            "assigned_to_id": second_tech,
            "status": "RESOLVED",
            "resolution_notes": "Swapped the router",
        },
    )
    assert response.status_code == 200
    payload = response.get_json()["ticket"]
    assert payload["assigned_to"]["id"] == second_tech
    assert payload["status"] == "RESOLVED"
    assert ticket_count_for(app, first_tech) == 0
    assert ticket_count_for(app, second_tech) == 0

    with app.app_context():
        assert db.session.get(Employee, second_tech).performance_metrics.total_tickets_resolved == 1


def test_workload_lists_available_technicians_first(app, client):
    login_admin(client)
    busy_id = create_employee(app, "busy@example.com", name="Loaded Tech")
    idle_id = create_employee(app, "idle@example.com", name="Idle Tech")
    offline_id = create_employee(app, "off@example.com", name="Offline Tech", handling_status="OFFLINE")
    customer_id = create_customer(app)
    create_ticket(client, customer_id, assigned_to_id=busy_id)
    create_ticket(client, customer_id, assigned_to_id=busy_id)

    response = client.get("/technicians/workload", headers=JSON_HEADERS)
    data = response.get_json()
    order = [entry["id"] for entry in data["technicians"]]
    assert order == [idle_id, busy_id, offline_id]

    loaded = data["technicians"][1]
    assert loaded["active_tickets"] == 2
    assert loaded["workload_percentage"] == 40
    assert loaded["available_slots"] == 3
    assert loaded["tickets_by_status"]["OPEN"] == 2
    assert data["technicians"][2]["can_take_more"] is False
    assert data["summary"]["total_active_tickets"] == 2

    page = client.get("/technicians/workload")
    assert b"Loaded Tech" in page.data


def test_creating_payment_with_negative_amount_is_rejected(app, client):
    login_admin(client)
    customer_id = create_customer(app)

    response = client.post(
        "/payments",
        json={"customer_id": customer_id, "amount": "-100", "payment_date": date.today().isoformat()},
    )
    assert response.status_code == 400
    assert response.get_json()["errors"]["amount"] == "Amount must be greater than 0"

    future = client.post(
        "/payments",
        json={
            "customer_id": customer_id,
            "amount": "100",
            "payment_date": (date.today() + timedelta(days=2)).isoformat(),
        },
    )
    assert future.get_json()["errors"]["payment_date"] == "Payment date cannot be in the future"

    with app.app_context():
        assert Payment.query.count() == 0


def test_payments_recalculate_customer_payment_status(app, client):
    login_admin(client)
    customer_id = create_customer(app)
    today = date.today().isoformat()

    pending = client.post(
        "/payments",
        json={"customer_id": customer_id, "amount": "250000", "payment_date": today, "status": "PENDING"},
    )
    assert pending.status_code == 201
    with app.app_context():
        assert db.session.get(Customer, customer_id).payment_status == "PENDING"

    overdue = client.post(
        "/payments",
        json={"customer_id": customer_id, "amount": "100000", "payment_date": today, "status": "OVERDUE"},
    )
    overdue_id = overdue.get_json()["payment"]["id"]
    with app.app_context():
        assert db.session.get(Customer, customer_id).payment_status == "OVERDUE"

    assert client.post(f"/payments/{overdue_id}/delete", json={}).status_code == 200
    with app.app_context():
        assert db.session.get(Customer, customer_id).payment_status == "PENDING"

    pending_id = pending.get_json()["payment"]["id"]
    response = client.post(
        f"/payments/{pending_id}/update",
        json={"customer_id": customer_id, "amount": "250000", "payment_date": today, "status": "PAID"},
    )
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Customer, customer_id).payment_status == "PAID"

    listing = client.get("/payments", headers=JSON_HEADERS).get_json()
    assert listing["total"] == 1
    assert listing["payments"][0]["amount"] == 250000.0


def test_payment_stats_and_billing(app, client):
    login_admin(client)
    monthly_id = create_package(app, "Home 20", price_cents=5000)
    yearly_id = create_package(app, "Business Yearly", price_cents=120000, duration="YEARLY")
    first = create_customer(app, "Alpha Co", email="alpha@example.com", package_id=monthly_id)
    second = create_customer(app, "Beta Co", email="beta@example.com", package_id=yearly_id)

    with app.app_context():
        today = date.today()
        db.session.add_all(
            [
                Payment(customer_id=first, amount_cents=5000, payment_date=today, status="PAID"),
                Payment(customer_id=second, amount_cents=10000, payment_date=today, status="OVERDUE"),
            ]
        )
        db.session.commit()

    stats = client.get("/payments/stats?period=month", headers=JSON_HEADERS).get_json()
    assert stats["total_payments"] == 2
    assert stats["total_revenue"] == 150.0
    assert stats["average_payment"] == 75.0
    assert stats["status_breakdown"] == {"PAID": 1, "PENDING": 0, "OVERDUE": 1}
    assert len(stats["monthly_trends"]) == 12
    assert stats["monthly_trends"][-1]["revenue"] == 150.0
    assert stats["top_customers"][0]["name"] == "Beta Co"
    assert stats["overdue_analysis"]["count"] == 1

    billing = client.get("/billing", headers=JSON_HEADERS).get_json()["summary"]
    assert billing["paid_revenue"] == 50.0
    assert billing["overdue_count"] == 1
    assert billing["expected_monthly_revenue"] == 150.0
    assert billing["collection_rate"] == pytest.approx(33.33)

    assert b"Beta Co" in client.get("/payments/stats").data
    assert client.get("/billing").status_code == 200


def test_reports_respect_scopes(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    create_employee(app, "hr@example.com", name="People Lead", role="HR", can_handle_tickets=False)
    create_employee(app, "sales@example.com", name="Sales Lead", role="MARKETING", can_handle_tickets=False)
    customer_id = create_customer(app)
    create_ticket(client, customer_id, assigned_to_id=tech_id)
    create_ticket(client, customer_id)

    financial = client.get("/reports/financial", headers=JSON_HEADERS)
    assert financial.status_code == 200
    assert "collection_rate" in financial.get_json()["summary"]

    admin_tickets = client.get("/reports/tickets", headers=JSON_HEADERS).get_json()
    assert admin_tickets["summary"]["total_tickets"] == 2
    assert set(admin_tickets["rating_distribution"]) == {"1", "2", "3", "4", "5"}

    tech_client = app.test_client()
    login(tech_client, "tech@example.com", TECH_PASSWORD)
    own = tech_client.get("/reports/tickets", headers=JSON_HEADERS).get_json()
    assert own["summary"]["total_tickets"] == 1
    assert tech_client.get("/reports/financial", headers=JSON_HEADERS).status_code == 403
    assert tech_client.get("/reports/employees", headers=JSON_HEADERS).status_code == 403

    hr_client = app.test_client()
    login(hr_client, "hr@example.com", TECH_PASSWORD)
    performance = hr_client.get("/reports/employees", headers=JSON_HEADERS).get_json()
    assert [row["id"] for row in performance["employees"]] == [tech_id]
    assert hr_client.get("/reports/financial", headers=JSON_HEADERS).status_code == 403

    sales_client = app.test_client()
    login(sales_client, "sales@example.com", TECH_PASSWORD)
    assert sales_client.get("/reports/financial", headers=JSON_HEADERS).status_code == 200
    assert b"Financial report" in sales_client.get("/reports").data


def test_report_date_filters(app, client):
    login_admin(client)
    customer_id = create_customer(app)
    with app.app_context():
        db.session.add(
            Payment(
                customer_id=customer_id,
                amount_cents=20000,
                payment_date=date.today() - timedelta(days=40),
                status="PAID",
            )
        )
        db.session.commit()

    recent_only = client.get(
        f"/reports/financial?date_from={(date.today() - timedelta(days=7)).isoformat()}",
        headers=JSON_HEADERS,
    ).get_json()
    assert recent_only["summary"]["total_payments"] == 0

    everything = client.get("/reports/financial", headers=JSON_HEADERS).get_json()
    assert everything["summary"]["total_payments"] == 1


def test_search_returns_breakdown_and_skips_unreadable_types(app, client):
    login_admin(client)
    create_package(app, "Fiber Home")
    customer_id = create_customer(app, "Fiber Bakery", email="bakery@example.com")
    create_ticket(client, customer_id, title="Fiber cut near bakery")
    create_employee(app, "tech@example.com", name="Fiber Specialist")

    results = client.get("/search?q=fiber&type=all", headers=JSON_HEADERS).get_json()
    assert results["breakdown"] == {"customers": 1, "tickets": 1, "employees": 1, "packages": 1}
    assert {item["type"] for item in results["results"]} == {"customer", "ticket", "employee", "package"}

    limited = client.get("/search?q=fiber&type=all&limit=2", headers=JSON_HEADERS).get_json()
    assert limited["total"] == 2

    tech_client = app.test_client()
    login(tech_client, "tech@example.com", TECH_PASSWORD)
    tech_results = tech_client.get("/search?q=fiber", headers=JSON_HEADERS).get_json()
    assert "packages" not in tech_results["breakdown"]

    invalid = client.get("/search?q=&type=invoices", headers=JSON_HEADERS)
    assert invalid.status_code == 400
    errors = invalid.get_json()["errors"]
    assert errors["q"] == "Search query is required"
    assert errors["type"] == "Invalid search type"

    page = client.get("/search?q=bakery")
    assert b"Fiber Bakery" in page.data


def test_csv_export_quotes_special_characters(app, client):
    login_admin(client)
    create_customer(
        app,
        'Doe, "JJ"',
        email="jj@example.com",
        address="Jl. Merdeka 1\nBlok B",
    )

    response = client.get("/export/customers.csv")
    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    assert "attachment" in response.headers["Content-Disposition"]

    text = response.get_data(as_text=True)
    assert text.splitlines()[0].startswith("ID,Name,Email")
    assert '"Doe, ""JJ"""' in text
    assert '"Jl. Merdeka 1\nBlok B"' in text

    assert client.get("/export/invoices.csv").status_code == 404
    printable = client.get("/export/customers/print")
    assert b"Doe, &#34;JJ&#34;" in printable.data

    create_employee(app, "tech@example.com")
    tech_client = app.test_client()
    login(tech_client, "tech@example.com", TECH_PASSWORD)
    assert tech_client.get("/export/payments.csv").status_code == 403
    assert tech_client.get("/export/customers.csv").status_code == 200


def test_rows_to_csv_leaves_plain_values_unquoted():
    text = rows_to_csv("payments", [{"id": 1, "customer": "Plain", "amount": 10.5, "payment_date": "2024-01-01", "status": "PAID", "notes": ""}])
    assert text.splitlines()[1] == "1,Plain,10.5,2024-01-01,PAID,"


def test_notifications_read_and_read_all(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)
    create_ticket(client, customer_id, assigned_to_id=tech_id)

    with app.app_context():
        admin = db.session.get(Employee, admin_id(app))
        foreign = create_notification("SYSTEM_ALERT", admin, "Backup finished", "Nightly backup done")
        db.session.commit()
        foreign_id = foreign.id

    tech_client = app.test_client()
    login(tech_client, "tech@example.com", TECH_PASSWORD)
    listing = tech_client.get("/notifications", headers=JSON_HEADERS).get_json()
    assert listing["unread_count"] == 2
    first_id = listing["notifications"][0]["id"]

    response = tech_client.post(f"/notifications/{first_id}/read", json={})
    assert response.get_json()["notification"]["is_read"] is True
    unread_only = tech_client.get("/notifications?unread=1", headers=JSON_HEADERS).get_json()
    assert unread_only["total"] == 1

    response = tech_client.post("/notifications/read-all", json={})
    assert response.get_json()["updated"] == 1
    assert tech_client.get("/notifications", headers=JSON_HEADERS).get_json()["unread_count"] == 0

    assert tech_client.post(f"/notifications/{foreign_id}/read", json={}).status_code == 404
    assert tech_client.post(f"/notifications/{foreign_id}/delete", json={}).status_code == 404
    assert tech_client.post(f"/notifications/{first_id}/delete", json={}).status_code == 200

    page = tech_client.get("/notifications")
    assert b"Notifications" in page.data


def test_customer_notifications_use_email_hook(app, client):
    sent = []
    app.config["NOTIFICATION_EMAIL_SENDER"] = lambda recipient, subject, body: sent.append(
        (recipient, subject, body)
    ) or True

    login_admin(client)
    tech_id = create_employee(app, "tech@example.com", name="Field Tech")
    customer_id = create_customer(app, email="jane@example.com")
    ticket_id = create_ticket(client, customer_id, assigned_to_id=tech_id)

    assert ("jane@example.com", "Ticket Assigned") in [(r, s) for r, s, _ in sent]
    assigned_body = next(body for _, subject, body in sent if subject == "Ticket Assigned")
    assert "has been assigned to Field Tech" in assigned_body

    client.post(f"/tickets/{ticket_id}/status", json={"status": "IN_PROGRESS"})
    client.post(f"/tickets/{ticket_id}/status", json={"status": "RESOLVED"})
    assert "Ticket Resolved" in [subject for _, subject, _ in sent]

    with app.app_context():
        delivered = Notification.query.filter_by(recipient_type="CUSTOMER", recipient_id=customer_id).all()
        assert delivered
        assert all(n.channel == "EMAIL" and n.delivery_status == "SENT" for n in delivered)


def test_customer_without_email_falls_back_to_sms(app, client):
    messages = []
    app.config["NOTIFICATION_SMS_SENDER"] = lambda phone, body: messages.append((phone, body)) or True
    with app.app_context():
        config = NotificationConfig.query.first()
        config.sms_enabled = True
        db.session.commit()

    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    sms_customer = create_customer(app, "Phone Only", email=None, phone="+6281234567890")
    silent_customer = create_customer(app, "Walk In", email=None, phone=None, address="Market St")

    create_ticket(client, sms_customer, assigned_to_id=tech_id)
    assert messages and messages[0][0] == "+6281234567890"
    assert messages[0][1].startswith("Ticket Assigned:")

    with app.app_context():
        tech = db.session.get(Employee, tech_id)
        create_notification("TICKET_UPDATE", db.session.get(Customer, silent_customer), "Hello", "Update")
        db.session.commit()
        skipped = Notification.query.filter_by(recipient_type="CUSTOMER", recipient_id=silent_customer).one()
        assert skipped.delivery_status == "SKIPPED"
        assert tech.current_ticket_count == 1


def test_sms_gateway_client_posts_json(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json, headers, timeout))
        return SimpleNamespace(status_code=202, text="", json=lambda: {"id": "msg-1"})

    monkeypatch.setattr(backoffice_module.requests, "post", fake_post)

    client = SmsGatewayClient("https://sms.example.com/send/", "token-123", timeout=3)
    assert client.send("+6281234567890", "Hello") == {"id": "msg-1"}
    url, body, headers, timeout = calls[0]
    assert url == "https://sms.example.com/send"
    assert body == {"to": "+6281234567890", "message": "Hello"}
    assert headers["authorization"] == "Bearer token-123"
    assert timeout == 3

    monkeypatch.setattr(
        backoffice_module.requests,
        "post",
        lambda *args, **kwargs: SimpleNamespace(status_code=500, text="boom", json=lambda: {}),
    )
    with pytest.raises(SmsGatewayError):
        client.send("+6281234567890", "Hello")


def test_settings_password_and_notification_configuration(app, client):
    create_employee(app, "hr@example.com", name="People Lead", role="HR", can_handle_tickets=False)
    create_employee(app, "tech@example.com")

    hr_client = app.test_client()
    login(hr_client, "hr@example.com", TECH_PASSWORD)
    page = hr_client.get("/settings")
    assert b"SMTP host" in page.data

    response = hr_client.post(
        "/settings/notifications",
        data={"email_enabled": "1", "smtp_host": "smtp.example.com", "smtp_port": "2525", "from_email": "noc@example.com"},
        follow_redirects=True,
    )
    assert b"Notification settings saved." in response.data
    with app.app_context():
        config = NotificationConfig.query.first()
        assert config.smtp_port == 2525
        assert config.sms_enabled is False
        assert config.smtp_ready()

    invalid = hr_client.post("/settings/notifications", json={"smtp_port": "99999"})
    assert invalid.get_json()["errors"]["smtp_port"] == "SMTP port must be between 1 and 65535"

    tech_client = app.test_client()
    login(tech_client, "tech@example.com", TECH_PASSWORD)
    assert b"SMTP host" not in tech_client.get("/settings").data
    assert tech_client.post("/settings/notifications", json={"smtp_host": "x"}).status_code == 403

    mismatch = tech_client.post(
        "/settings/password",
        json={"current_password": TECH_PASSWORD, "new_password": "NewPass123!", "confirm_password": "Other123!"},
    )
    assert mismatch.get_json()["errors"]["confirm_password"] == "Passwords do not match"

    response = tech_client.post(
        "/settings/password",
        data={"current_password": TECH_PASSWORD, "new_password": "NewPass123!", "confirm_password": "NewPass123!"},
        follow_redirects=True,
    )
    assert b"Password updated." in response.data
    tech_client.get("/logout")
    assert b"Welcome back" in login(tech_client, "tech@example.com", "NewPass123!").data


def test_dashboard_overview_cache_invalidated_by_writes(app, client):
    login_admin(client)

    first = client.get("/dashboard", headers=JSON_HEADERS).get_json()["stats"]
    assert first["customers"]["total"] == 0

    create_customer(app)
    second = client.get("/dashboard", headers=JSON_HEADERS).get_json()["stats"]
    assert second["customers"]["total"] == 1
    assert second["customers"]["new_this_month"] == 1


def test_ticket_pages_render(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com", name="Field Tech")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=tech_id)
    client.post(f"/tickets/{ticket_id}/notes", json={"content": "Visited the site"})

    detail = client.get(f"/tickets/{ticket_id}")
    assert detail.status_code == 200
    assert b"No internet connection" in detail.data
    assert b"Visited the site" in detail.data

    history = client.get(f"/tickets/{ticket_id}/history", headers=JSON_HEADERS).get_json()["history"]
    assert history[-1]["status"] == "OPEN"

    listing = client.get("/tickets?priority=HIGH")
    assert b"No internet connection" in listing.data
    assert client.get(f"/tickets/{ticket_id}/edit").status_code == 200
    assert client.get("/tickets/new").status_code == 200

    public_page = app.test_client().get(f"/feedback/{ticket_id}")
    assert b"Feedback opens once your ticket has been resolved." in public_page.data

    assert client.get("/tickets/9999", headers=JSON_HEADERS).status_code == 404


def test_delete_ticket_releases_workload(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com")
    customer_id = create_customer(app)
    ticket_id = create_ticket(client, customer_id, assigned_to_id=tech_id)
    assert ticket_count_for(app, tech_id) == 1

    response = client.post(f"/tickets/{ticket_id}/delete", follow_redirects=True)
    assert b"Ticket removed." in response.data
    assert ticket_count_for(app, tech_id) == 0


def test_json_employee_update_keeps_flags_that_are_omitted(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com", max_concurrent_tickets=3)
    customer_id = create_customer(app)
    create_ticket(client, customer_id, assigned_to_id=tech_id)

    response = client.post(
        f"/employees/{tech_id}/update",
        json={"name": "Renamed Tech", "email": "tech@example.com", "role": "TECHNICIAN", "hire_date": "2024-01-01"},
    )
    assert response.status_code == 200
    payload = response.get_json()["employee"]
    assert payload["name"] == "Renamed Tech"
    assert payload["is_active"] is True
    assert payload["can_handle_tickets"] is True
    assert payload["handling_status"] == "AVAILABLE"
    assert payload["max_concurrent_tickets"] == 3
    assert b"Welcome back, Renamed Tech!" in login(app.test_client(), "tech@example.com", TECH_PASSWORD).data

    response = client.post(
        f"/employees/{tech_id}/update",
        json={
            "name": "Renamed Tech",
            "email": "tech@example.com",
            "role": "TECHNICIAN",
            "hire_date": "2024-01-01",
            "can_handle_tickets": False,
        },
    )
    payload = response.get_json()["employee"]
    assert payload["can_handle_tickets"] is False
    assert payload["handling_status"] == "OFFLINE"
    assert payload["is_active"] is True


def rate_resolved_ticket(client, customer_id: int, technician_id: int, rating: int) -> int:
    ticket_id = create_ticket(client, customer_id, assigned_to_id=technician_id)
    client.post(
        f"/tickets/{ticket_id}/complete",
        json={"status": "RESOLVED", "resolution_notes": "Fixed"},
    )
    response = client.post(f"/tickets/{ticket_id}/feedback", json={"rating": rating})
    assert response.status_code == 201, response.get_json()
    return ticket_id


def test_feedback_overview_filters_and_statistics(app, client):
    login_admin(client)
    alice_id = create_employee(app, "alice@example.com", name="Alice Tech")
    bob_id = create_employee(app, "bob@example.com", name="Bob Tech")
    create_employee(app, "hr@example.com", name="People Lead", role="HR", can_handle_tickets=False)
    customer_id = create_customer(app)

    rate_resolved_ticket(client, customer_id, alice_id, 5)
    older_ticket = rate_resolved_ticket(client, customer_id, alice_id, 4)
    rate_resolved_ticket(client, customer_id, bob_id, 4)

    stats = client.get("/feedback", headers=JSON_HEADERS).get_json()
    assert stats["summary"]["total_feedbacks"] == 3
    assert stats["summary"]["average_rating"] == pytest.approx(4.33)
    assert stats["summary"]["rating_distribution"] == {"1": 0, "2": 0, "3": 0, "4": 2, "5": 1}
    assert [row["name"] for row in stats["employee_performance"]] == ["Alice Tech", "Bob Tech"]
    assert stats["employee_performance"][0]["average_rating"] == pytest.approx(4.5)
    assert len(stats["monthly_trends"]) == 6
    assert stats["monthly_trends"][-1]["total_feedbacks"] == 3

    by_bob = client.get(f"/feedback?employee_id={bob_id}", headers=JSON_HEADERS).get_json()
    assert by_bob["summary"]["total_feedbacks"] == 1
    assert by_bob["feedbacks"][0]["ticket"]["assigned_to"]["name"] == "Bob Tech"

    five_star = client.get("/feedback?rating=5", headers=JSON_HEADERS).get_json()
    assert five_star["summary"]["total_feedbacks"] == 1

    with app.app_context():
        feedback = TicketFeedback.query.filter_by(ticket_id=older_ticket).one()
        feedback.created_at = datetime.now(UTC) - timedelta(days=10)
        db.session.commit()
    last_week = client.get("/feedback?period=week", headers=JSON_HEADERS).get_json()
    assert last_week["summary"]["total_feedbacks"] == 2
    assert last_week["summary"]["period"] == "week"

    page = client.get("/feedback")
    assert page.status_code == 200
    assert b"Rating distribution" in page.data

    tech_client = app.test_client()
    login(tech_client, "alice@example.com", TECH_PASSWORD)
    own = tech_client.get(f"/feedback?employee_id={bob_id}", headers=JSON_HEADERS).get_json()
    assert own["summary"]["total_feedbacks"] == 2
    assert {row["name"] for row in own["employee_performance"]} == {"Alice Tech"}

    hr_client = app.test_client()
    login(hr_client, "hr@example.com", TECH_PASSWORD)
    assert hr_client.get("/feedback", headers=JSON_HEADERS).status_code == 403


def test_employee_performance_page_aggregates_feedback(app, client):
    login_admin(client)
    tech_id = create_employee(app, "tech@example.com", name="Rated Tech")
    customer_id = create_customer(app)
    rate_resolved_ticket(client, customer_id, tech_id, 5)
    rate_resolved_ticket(client, customer_id, tech_id, 4)

    report = client.get(f"/employees/{tech_id}/performance", headers=JSON_HEADERS).get_json()
    performance = report["performance"]
    assert performance["total_feedbacks"] == 2
    assert performance["average_rating"] == pytest.approx(4.5)
    assert performance["rating_distribution"]["5"] == 1
    assert performance["monthly_stats"][-1] == {
        "month": date.today().strftime("%Y-%m"),
        "total_feedbacks": 2,
        "average_rating": 4.5,
    }
    assert report["metrics"]["total_tickets_resolved"] == 2
    assert len(report["recent_feedback"]) == 2

    page = client.get(f"/employees/{tech_id}/performance")
    assert page.status_code == 200
    assert b"Rated Tech: performance" in page.data
    assert client.get("/employees/9999/performance", headers=JSON_HEADERS).status_code == 404


def test_employee_updates_own_profile(app, client):
    tech_id = create_employee(app, "tech@example.com", name="Field Tech")
    tech_client = app.test_client()
    login(tech_client, "tech@example.com", TECH_PASSWORD)

    invalid = tech_client.post("/settings/profile", json={"name": "X", "phone": "call me"})
    assert invalid.status_code == 400
    errors = invalid.get_json()["errors"]
    assert errors["name"] == "Name must be at least 2 characters"
    assert errors["phone"] == "Invalid phone number format"

    response = tech_client.post(
        "/settings/profile",
        data={"name": "Field Lead", "phone": "0812-3456-7890"},
        follow_redirects=True,
    )
    assert b"Profile updated." in response.data
    with app.app_context():
        employee = db.session.get(Employee, tech_id)
        assert employee.name == "Field Lead"
        assert employee.phone == "0812-3456-7890"


def test_password_change_rejects_null_fields(app, client):
    create_employee(app, "tech@example.com")
    tech_client = app.test_client()
    login(tech_client, "tech@example.com", TECH_PASSWORD)

    response = tech_client.post(
        "/settings/password",
        json={"current_password": None, "new_password": None, "confirm_password": 12345678},
    )
    assert response.status_code == 400
    errors = response.get_json()["errors"]
    assert errors["current_password"] == "Current password is incorrect"
    assert errors["new_password"] == "Password must be at least 8 characters"
