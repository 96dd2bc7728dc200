# reports.py
import pandas as pd

STATEMENT_COLUMNS = ["Date", "Type", "Amount", "Effect", "Balance", "Counterparty", "Message"]


def statement_frame(ledger, account_id):
    """One row per transaction touching the account, with a running balance."""
    rows = []
    for txn in ledger.history(account_id):
        counterparty = txn.to_user_id if txn.from_user_id == account_id else txn.from_user_id
        rows.append({
            "Date": txn.created_at,
            "Type": txn.transaction_type,
            "Amount": txn.credit_amount,
            "Effect": txn.effect_on(account_id),
            "Counterparty": counterparty,
            "Message": txn.message,
        })
    df = pd.DataFrame(rows, columns=STATEMENT_COLUMNS)
    if not df.empty:
        df["Balance"] = df["Effect"].cumsum()
    return df


def emissions_summary(ledger, account_id):
    """Total kg CO2 per activity category."""
    records = ledger.emissions_for(account_id)
    df = pd.DataFrame([{"Category": rec.activity_type, "Emissions (kg CO2)": float(rec.co2_generated)}
                       for rec in records], columns=["Category", "Emissions (kg CO2)"])
    if df.empty:
        return df
    return df.groupby("Category").sum().reset_index()


def export_statement_csv(ledger, account_id):
    return statement_frame(ledger, account_id).to_csv(index=False).encode("utf-8")
