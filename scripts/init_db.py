import os
import sys
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.enrollsage.db import url_session_scope
from app.enrollsage.models import User
from app.enrollsage.modules.catalog.models import Category, Product
from app.enrollsage.modules.families.models import Guardian, Household, Student
from app.enrollsage.modules.schools.models import School, SchoolMember, SchoolYear

# Remaining tables, so every relationship resolves.
import app.enrollsage.modules.admissions.models  # noqa: F401,E402
import app.enrollsage.modules.billing.models  # noqa: F401,E402
import app.enrollsage.modules.orders.models  # noqa: F401,E402
import app.enrollsage.modules.payments.models  # noqa: F401,E402
import app.enrollsage.modules.promotions.models  # noqa: F401,E402
import app.enrollsage.modules.team.models  # noqa: F401,E402

DEMO_SCHOOL_SLUG = "westlake-academy"
DEMO_SCHOOL_YEAR = "2025-2026"

CATEGORIES = (
    ("Bar Soaps", "bar-soaps", "Cold-process bars made in small batches."),
    ("Body Care", "body-care", "Balms, butters and scrubs."),
    ("Gift Sets", "gift-sets", "Curated bundles for gifting."),
)

PRODUCTS = (
    {
        "name": "Lavender Oat Bar",
        "slug": "lavender-oat-bar",
        "category": "bar-soaps",
        "price": "9.00",
        "short_description": "Calming lavender with colloidal oats.",
        "ingredients": "Olive oil, coconut oil, shea butter, lavender essential oil, oats",
        "stock_quantity": 48,
        "featured": True,
    },
    {
        "name": "Charcoal Tea Tree Bar",
        "slug": "charcoal-tea-tree-bar",
        "category": "bar-soaps",
        "price": "10.00",
        "short_description": "Deep-cleaning activated charcoal.",
        "ingredients": "Olive oil, coconut oil, activated charcoal, tea tree oil",
        "stock_quantity": 36,
        "featured": True,
    },
    {
        "name": "Honey Almond Bar",
        "slug": "honey-almond-bar",
        "category": "bar-soaps",
        "price": "9.00",
        "short_description": "Raw honey and sweet almond oil.",
        "ingredients": "Olive oil, sweet almond oil, raw honey, goat milk",
        "stock_quantity": 6,
        "featured": False,
    },
    {
        "name": "Whipped Shea Body Butter",
        "slug": "whipped-shea-body-butter",
        "category": "body-care",
        "price": "18.00",
        "compare_at_price": "22.00",
        "short_description": "Rich, unscented shea butter.",
        "ingredients": "Shea butter, mango butter, jojoba oil, vitamin E",
        "stock_quantity": 20,
        "featured": True,
    },
    {
        "name": "Sampler Gift Box",
        "slug": "sampler-gift-box",
        "category": "gift-sets",
        "price": "32.00",
        "short_description": "Four best-selling bars in a kraft box.",
        "ingredients": "See individual bars",
        "stock_quantity": 12,
        "featured": False,
    },
)


def _ensure_user(s: Session, email: str, password: str, *, role: str, first: str, last: str) -> User:
    """Creates the user if missing. An existing user's password is never overwritten."""
    u = s.query(User).filter(User.email == email).one_or_none()
    if not u:
        u = User(
            email=email,
            password_hash=generate_password_hash(password),
            role=role,
            first_name=first,
            last_name=last,
            email_verified=True,
            is_active=True,
        )
        s.add(u)
        s.flush()
    return u

def _ensure_member(s: Session, school: School, user: User, role: str) -> SchoolMember:
    m = (
        s.query(SchoolMember)
        .filter(SchoolMember.school_id == school.id, SchoolMember.user_id == user.id)
        .one_or_none()
    )
    if not m:
        now = datetime.utcnow()
        m = SchoolMember(school_id=school.id, user_id=user.id, role=role, status="active", invited_at=now, accepted_at=now)
        s.add(m)
        s.flush()
    return m

def seed_demo_data(s: Session) -> dict[str, object]:
    """Idempotent demo seed; returns the key rows for callers that want them."""
    superadmin = _ensure_user(
        s, "superadmin@enrollsage.com", "superadmin123", role="superadmin", first="Platform", last="Admin"
    )

    school = s.query(School).filter(School.slug == DEMO_SCHOOL_SLUG).one_or_none()
    if not school:
        school = School(
            name="Westlake Academy",
            slug=DEMO_SCHOOL_SLUG,
            current_school_year=DEMO_SCHOOL_YEAR,
            grades_offered=["PK", "K", "1", "2", "3", "4", "5", "6", "7", "8"],
            email="office@westlake.example.com",
            phone="(555) 010-2000",
            city="Austin",
            state="TX",
            status="active",
            trial_ends_at=datetime.utcnow() + timedelta(days=30),
        )
        s.add(school)
        s.flush()
    if not s.query(SchoolYear).filter(SchoolYear.school_id == school.id, SchoolYear.name == DEMO_SCHOOL_YEAR).first():
        s.add(
            SchoolYear(
                school_id=school.id,
                name=DEMO_SCHOOL_YEAR,
                start_date=date(2025, 8, 18),
                end_date=date(2026, 5, 29),
                enrollment_open_date=date(2025, 1, 6),
                enrollment_close_date=date(2025, 7, 31),
                is_current=True,
            )
        )

    owner = _ensure_user(s, "admin@example.com", "admin123", role="admin", first="Dana", last="Owens")
    _ensure_member(s, school, owner, "owner")
    admissions = _ensure_user(s, "admissions@example.com", "admissions123", role="admin", first="Alex", last="Rivera")
    _ensure_member(s, school, admissions, "admissions")

    parent = _ensure_user(s, "student@example.com", "student123", role="customer", first="Sarah", last="Johnson")
    guardian = s.query(Guardian).filter(Guardian.user_id == parent.id).first()
    if not guardian:
        household = Household(
            school_id=school.id,
            name="The Johnson Family",
            primary_email=parent.email,
            primary_phone="(555) 010-3344",
            city="Austin",
            state="TX",
            status="active",
        )
        s.add(household)
        s.flush()
        s.add(
            Guardian(
                household_id=household.id,
                user_id=parent.id,
                first_name="Sarah",
                last_name="Johnson",
                email=parent.email,
                relationship_type="mother",
                is_primary=True,
                has_portal_access=True,
                is_billing_contact=True,
                is_emergency_contact=True,
            )
        )
        s.add(
            Student(
                school_id=school.id,
                household_id=household.id,
                first_name="Emma",
                last_name="Johnson",
                grade_level="3",
                enrollment_status="enrolled",
            )
        )

    _ensure_user(s, "apply@example.com", "apply123", role="customer", first="Jordan", last="Lee")

    categories: dict[str, Category] = {}
    for i, (name, slug, description) in enumerate(CATEGORIES):
        c = s.query(Category).filter(Category.slug == slug).one_or_none()
        if not c:
            c = Category(name=name, slug=slug, description=description, sort_order=i)
            s.add(c)
            s.flush()
        categories[slug] = c
    for i, spec in enumerate(PRODUCTS):
        if s.query(Product.id).filter(Product.slug == spec["slug"]).first():
            continue
        s.add(
            Product(
                name=spec["name"],
                slug=spec["slug"],
                category_id=categories[spec["category"]].id,
                price=Decimal(spec["price"]),
                compare_at_price=Decimal(spec["compare_at_price"]) if spec.get("compare_at_price") else None,
                short_description=spec["short_description"],
                description=spec["short_description"],
                ingredients=spec["ingredients"],
                images=[],
                stock_quantity=spec["stock_quantity"],
                in_stock=spec["stock_quantity"] > 0,
                featured=spec["featured"],
                sort_order=i,
            )
        )
    s.flush()
    return {"superadmin": superadmin, "school": school, "owner": owner, "admissions": admissions, "parent": parent}

def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the platform admin, the demo school and the storefront catalog in an idempotent way.
    Does NOT overwrite an existing user's password.
    """
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///enrollsage.db").strip()

    # No Flask app here; release runs before the web process exists.
    with url_session_scope(db_url) as s:
        seed_demo_data(s)

    print("Initialized database (seed_only).")
    print("Superadmin email: superadmin@enrollsage.com")


def main() -> None:
    seed_only(database_url=None)

if __name__ == "__main__":
    main()
