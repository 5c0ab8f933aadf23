#!/usr/bin/env python3
"""
GRC Platform: Demo Seed.

Creates one demo organization with a user per member role, the ISO 27001
Annex A control catalogue, an initialised SoA and a couple of draft risks.
Idempotent: rows that already exist (matched by slug / email / control id)
are reused, so running it twice changes nothing.

Usage:
    python scripts/seed_demo.py            # seed into the current DB
    python scripts/seed_demo.py --reset    # drop + recreate all tables first

Use the printed user ids as the X-User-Id header when calling the API.
"""

import argparse
import sys

sys.path.insert(0, ".")

from grc import create_app
from grc.core.actor import ActorContext
from grc.models import db
from grc.models.auth import (
    ROLE_ADMIN, ROLE_AUDITOR, ROLE_LOCAL_ADMIN, ROLE_USER, ROLE_VIEWER,
    Organization, OrganizationMember, User,
)
from grc.models.risk import Risk
from grc.models.soa import Control
from grc.services import risk_service, soa_service

ORG_SLUG = "demo-isms"

DEMO_USERS = [
    # (email, first, last, designation, global role, member role)
    ("admin@isms.local", "Ada", "Admin", "CISO", ROLE_ADMIN, ROLE_ADMIN),
    ("local.admin@isms.local", "Lee", "Local", "ISMS Manager", ROLE_USER, ROLE_LOCAL_ADMIN),
    ("auditor@isms.local", "Ari", "Auditor", "Internal Auditor", ROLE_USER, ROLE_AUDITOR),
    ("analyst@isms.local", "Sam", "Analyst", "Risk Analyst", ROLE_USER, ROLE_USER),
    ("viewer@isms.local", "Vic", "Viewer", "Board Observer", ROLE_USER, ROLE_VIEWER),
]

# (control id, name, category)
ANNEX_A_CONTROLS = [
    ("A.5.1", "Policies for information security", "A5_ORGANIZATIONAL"),
    ("A.5.2", "Information security roles and responsibilities", "A5_ORGANIZATIONAL"),
    ("A.5.3", "Segregation of duties", "A5_ORGANIZATIONAL"),
    ("A.5.4", "Management responsibilities", "A5_ORGANIZATIONAL"),
    ("A.5.7", "Threat intelligence", "A5_ORGANIZATIONAL"),
    ("A.5.9", "Inventory of information and other associated assets", "A5_ORGANIZATIONAL"),
    ("A.5.15", "Access control", "A5_ORGANIZATIONAL"),
    ("A.5.19", "Information security in supplier relationships", "A5_ORGANIZATIONAL"),
    ("A.5.23", "Information security for use of cloud services", "A5_ORGANIZATIONAL"),
    ("A.5.24", "Information security incident management planning and preparation", "A5_ORGANIZATIONAL"),
    ("A.5.30", "ICT readiness for business continuity", "A5_ORGANIZATIONAL"),
    ("A.6.1", "Screening", "A6_PEOPLE"),
    ("A.6.3", "Information security awareness, education and training", "A6_PEOPLE"),
    ("A.6.7", "Remote working", "A6_PEOPLE"),
    ("A.7.1", "Physical security perimeters", "A7_PHYSICAL"),
    ("A.7.4", "Physical security monitoring", "A7_PHYSICAL"),
    ("A.8.1", "User end point devices", "A8_TECHNOLOGICAL"),
    ("A.8.5", "Secure authentication", "A8_TECHNOLOGICAL"),
    ("A.8.8", "Management of technical vulnerabilities", "A8_TECHNOLOGICAL"),
    ("A.8.13", "Information backup", "A8_TECHNOLOGICAL"),
    ("A.8.15", "Logging", "A8_TECHNOLOGICAL"),
    ("A.8.24", "Use of cryptography", "A8_TECHNOLOGICAL"),
    ("A.8.28", "Secure coding", "A8_TECHNOLOGICAL"),
]

DEMO_RISKS = [
    {"title": "Ransomware outbreak on file servers", "category": "Cyber", "likelihood": 3, "impact": 5},
    {"title": "Supplier data breach", "category": "Third party", "likelihood": 2, "impact": 4},
]


def seed_organization():
    org = Organization.query.filter_by(slug=ORG_SLUG).first()
    if org is None:
        org = Organization(name="Demo ISMS Ltd", slug=ORG_SLUG)
        db.session.add(org)
        db.session.flush()
    return org


def seed_users(org):
    users = {}
    for email, first, last, designation, role, member_role in DEMO_USERS:
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(email=email, first_name=first, last_name=last, designation=designation, role=role)
            db.session.add(user)
            db.session.flush()
        if not OrganizationMember.query.filter_by(organization_id=org.id, user_id=user.id).first():
            db.session.add(OrganizationMember(organization_id=org.id, user_id=user.id, role=member_role))
        users[member_role] = user
    db.session.flush()
    return users


def seed_controls(org):
    created = 0
    for control_id, name, category in ANNEX_A_CONTROLS:
        if Control.query.filter_by(organization_id=org.id, control_id=control_id).first():
            continue
        db.session.add(Control(organization_id=org.id, control_id=control_id, name=name, category=category))
        created += 1
    db.session.flush()
    return created


def seed_demo():
    """Seed everything; returns a summary dict."""
    org = seed_organization()
    users = seed_users(org)
    controls = seed_controls(org)
    db.session.commit()

    # Service calls run their own transactions, through a real actor
    admin = ActorContext.for_user(users[ROLE_ADMIN])
    entries = soa_service.initialize_soa(admin, org.id)

    analyst = ActorContext.for_user(users[ROLE_USER])
    risks = 0
    for data in DEMO_RISKS:
        if not Risk.query.filter_by(organization_id=org.id, title=data["title"]).first():
            risk_service.create_risk(analyst, org.id, dict(data))
            risks += 1

    return {
        "organization_id": org.id,
        "users": {role: u.id for role, u in users.items()},
        "controls_created": controls,
        "soa_entries_created": len(entries),
        "risks_created": risks,
    }


def main():
    parser = argparse.ArgumentParser(description="GRC demo seed")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate all tables first")
    args = parser.parse_args()

    app = create_app()
    print(f"  DB: {app.config['SQLALCHEMY_DATABASE_URI']}\n")

    with app.app_context():
        if args.reset:
            db.drop_all()
            db.create_all()
            print("  Database reset complete\n")
        else:
            db.create_all()

        summary = seed_demo()

    print("═" * 60)
    print(f"  DEMO SEED COMPLETE: organization id {summary['organization_id']}")
    for role, user_id in summary["users"].items():
        print(f"     {role:<12} X-User-Id: {user_id}")
    print(f"  {summary['controls_created']} controls, {summary['soa_entries_created']} SoA entries, "
          f"{summary['risks_created']} risks created")
    print("═" * 60)


if __name__ == "__main__":
    main()
