"""Tracked record tables.

Every household module stores its rows in its own table with the same
physical shape:

    id            TEXT primary key (stable, unique within the table)
    household_id  TEXT, nullable
    created_at    DATETIME, nullable (naive UTC)
    updated_at    DATETIME, nullable (naive UTC)
    data          JSON, the full row as written by the app (camelCase keys)

The timestamp columns are denormalised from data["createdAt"] /
data["updatedAt"] so the change collector can filter without parsing JSON.
A kind missing from TableKind is invisible to sync.
"""
from enum import Enum
from typing import Dict

from sqlalchemy import JSON, Column, DateTime, String, Table
from sqlmodel import SQLModel


class TableKind(str, Enum):
    # Core
    USERS = "users"
    HOUSEHOLDS = "households"
    HOUSEHOLD_MEMBERS = "householdMembers"
    CHORES = "chores"
    GROCERY_ITEMS = "groceryItems"
    GROCERY_CATEGORIES = "groceryCategories"
    SAVED_GROCERY_ITEMS = "savedGroceryItems"
    TASKS = "tasks"
    TASK_CATEGORIES = "taskCategories"
    HOME_IMPROVEMENTS = "homeImprovements"
    MEALS = "meals"
    MEAL_CATEGORIES = "mealCategories"
    SAVED_MEALS = "savedMeals"
    REMINDERS = "reminders"
    CALENDAR_EVENTS = "calendarEvents"
    HOME_SETTINGS = "homeSettings"
    # Keto
    KETO_SETTINGS = "ketoSettings"
    KETO_DAYS = "ketoDays"
    KETO_WEIGHT_ENTRIES = "ketoWeightEntries"
    KETO_BODY_MEASUREMENTS = "ketoBodyMeasurements"
    KETO_WATER_ENTRIES = "ketoWaterEntries"
    KETO_SYMPTOM_ENTRIES = "ketoSymptomEntries"
    # Finance
    MONTHLY_INCOMES = "monthlyIncomes"
    MONTHLY_EXCHANGE_RATES = "monthlyExchangeRates"
    RECURRING_EXPENSES = "recurringExpenses"
    EXPENSE_CATEGORIES = "expenseCategories"
    EXPENSE_PAYMENTS = "expensePayments"
    SETTLEMENT_PAYMENTS = "settlementPayments"
    # Document vault
    DOCUMENTS = "documents"
    DOCUMENT_FOLDERS = "documentFolders"
    DOCUMENT_TAGS = "documentTags"
    # Maintenance scheduler
    MAINTENANCE_ITEMS = "maintenanceItems"
    MAINTENANCE_TASKS = "maintenanceTasks"
    MAINTENANCE_LOGS = "maintenanceLogs"
    # Subscription manager
    SUBSCRIPTIONS = "subscriptions"
    SUBSCRIPTION_PAYMENTS = "subscriptionPayments"
    # Pets
    PETS = "pets"
    PET_FEEDING_SCHEDULES = "petFeedingSchedules"
    PET_FEEDING_LOGS = "petFeedingLogs"
    PET_MEDICATIONS = "petMedications"
    PET_MEDICATION_LOGS = "petMedicationLogs"
    PET_VET_VISITS = "petVetVisits"
    PET_VACCINATIONS = "petVaccinations"
    # Savings
    SAVINGS_CAMPAIGNS = "savingsCampaigns"
    SAVINGS_MILESTONES = "savingsMilestones"
    SAVINGS_PARTICIPANTS = "savingsParticipants"
    SAVINGS_CONTRIBUTIONS = "savingsContributions"


# Tables whose schema-v1 rows used auto-increment integer ids. The migration
# gate rewrites those ids as "<prefix>_<uuid>".
LEGACY_ID_PREFIXES: Dict[TableKind, str] = {
    TableKind.HOME_SETTINGS: "home",
    TableKind.USERS: "usr",
    TableKind.CHORES: "chr",
    TableKind.GROCERY_ITEMS: "gri",
    TableKind.GROCERY_CATEGORIES: "gcat",
    TableKind.SAVED_GROCERY_ITEMS: "sgi",
    TableKind.TASKS: "tsk",
    TableKind.HOME_IMPROVEMENTS: "hip",
    TableKind.MEALS: "meal",
    TableKind.MEAL_CATEGORIES: "mcat",
    TableKind.SAVED_MEALS: "smeal",
    TableKind.REMINDERS: "rem",
    TableKind.CALENDAR_EVENTS: "cal",
}

# Columns every record table must have; the migration gate adds any missing
# nullable ones to tables created by older schema versions.
REQUIRED_COLUMNS: Dict[str, str] = {
    "household_id": "TEXT",
    "created_at": "DATETIME",
    "updated_at": "DATETIME",
}


def sql_table_name(kind: TableKind) -> str:
    """SQLite table name for a kind, lowercased like SQLModel's defaults."""
    return kind.value.lower()


def _build_table(kind: TableKind) -> Table:
    return Table(
        sql_table_name(kind),
        SQLModel.metadata,
        Column("id", String, primary_key=True),
        Column("household_id", String, index=True, nullable=True),
        Column("created_at", DateTime, nullable=True),
        Column("updated_at", DateTime, nullable=True),
        Column("data", JSON, nullable=False),
    )


RECORD_TABLES: Dict[TableKind, Table] = {kind: _build_table(kind) for kind in TableKind}
