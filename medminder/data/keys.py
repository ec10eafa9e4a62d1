"""Logical keys of everything MedMinder persists in the key-value store."""


class StorageKeys:
    MEDICATIONS = "@medications"
    DOSE_RECORDS = "@dose_records"
    MEDICATION_HISTORY = "@medication_history"
    SCHEDULED_NOTIFICATIONS = "@scheduled_notifications"
    LAST_RESET_DATE = "@last_reset_date"
    LAST_CLOSED_DATE = "@last_closed_date"
    LAST_NOTIFICATION_SCHEDULE = "@last_notification_schedule"
    PREFERENCES = "@preferences"
    ESCALATIONS = "@escalations"
