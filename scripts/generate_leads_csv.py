"""Generate partner upload CSVs for exercising the batch processor."""
import csv
import random
import sys

COLUMNS = [
    "first_name",
    "last_name",
    "email",
    "phone",
    "company_name",
    "company_domain",
    "job_title",
    "seniority_level",
    "city",
    "state",
    "industry",
]

FIRST_NAMES = ["Dana", "Riley", "Morgan", "Avery", "Jordan", "Casey", "Quinn", "Reese", "Skyler", "Harper"]
LAST_NAMES = ["Okafor", "Whitfield", "Nguyen", "Castillo", "Brennan", "Patel", "Lindqvist", "Moreau"]
COMPANY_WORDS = ["Summit", "Harbor", "Ironwood", "Bluestem", "Cedar", "Northwind", "Redline", "Keystone"]
INDUSTRIES = ["hvac", "roofing", "plumbing", "solar", "insurance", "real estate", "landscaping", "legal"]
CITIES = [("Austin", "TX"), ("Denver", "CO"), ("Tampa", "FL"), ("Phoenix", "AZ"), ("Columbus", "OH")]
TITLES = [
    ("Owner", "c_suite"),
    ("VP of Operations", "vp"),
    ("Director of Sales", "director"),
    ("Office Manager", "manager"),
    ("Estimator", "ic"),
]


def lead_row(i: int) -> list:
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    industry = random.choice(INDUSTRIES)
    company = f"{random.choice(COMPANY_WORDS)} {industry.title()}"
    domain = company.lower().replace(" ", "-") + ".com"
    city, state = random.choice(CITIES)
    title, seniority = random.choice(TITLES)
    phone = f"({random.randint(200, 989)}) 555-{random.randint(0, 9999):04d}" if random.random() < 0.7 else ""
    return [
        first,
        last,
        f"{first.lower()}.{last.lower()}{i}@{domain}",
        phone,
        company,
        domain,
        title,
        seniority,
        city,
        state,
        industry,
    ]


def broken_row(row: list) -> list:
    """Damage one required field so the row is rejected."""
    row = list(row)
    column = random.choice(["email", "state", "industry", "first_name"])
    index = COLUMNS.index(column)
    row[index] = {"email": "not-an-email", "state": "ZZ", "industry": "widgets", "first_name": ""}[column]
    return row


def generate_csv(num_rows: int, output_file: str, invalid_rate: float = 0.05, duplicate_rate: float = 0.10) -> None:
    """
    Write ``num_rows`` lead rows, some invalid and some repeating earlier rows.

    Args:
        num_rows: Number of data rows to generate
        output_file: Output CSV file path
        invalid_rate: Share of rows with a damaged required field
        duplicate_rate: Share of rows that repeat an earlier valid row
    """
    written: list[list] = []
    with open(output_file, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(COLUMNS)

        for i in range(num_rows):
            roll = random.random()
            if written and roll < duplicate_rate:
                row = random.choice(written)
            elif roll < duplicate_rate + invalid_rate:
                row = broken_row(lead_row(i))
            else:
                row = lead_row(i)
                if len(written) < 10000:
                    written.append(row)
            writer.writerow(row)

            if (i + 1) % 10000 == 0:
                print(f"Generated {i+1:,} rows...")

    print(f"Generated {num_rows:,} lead rows in {output_file}")


def main():
    if len(sys.argv) < 2:
        print("Usage: python generate_leads_csv.py <num_rows> [output_file]")
        print("Example: python generate_leads_csv.py 100000 partner_100k.csv")
        sys.exit(1)

    num_rows = int(sys.argv[1])
    output_file = sys.argv[2] if len(sys.argv) > 2 else f"partner_leads_{num_rows}.csv"
    generate_csv(num_rows, output_file)


if __name__ == "__main__":
    main()
