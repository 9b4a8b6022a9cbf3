"""Generate sample supplier catalog files for testing the import pipeline."""
import csv
import random
import sys


def ean13(seed: int) -> str:
    """Build a valid EAN-13 from a 12-digit body."""
    body = f"{300000000000 + seed:012d}"[-12:]
    total = sum(int(d) * (3 if i % 2 else 1) for i, d in enumerate(body))
    return body + str((10 - total % 10) % 10)


def generate_csv(num_rows: int, output_file: str, delimiter: str = ";") -> None:
    """
    Generate a supplier CSV with French-style prices ("12,50").

    Args:
        num_rows: Number of product rows to generate
        output_file: Output CSV file path
        delimiter: Column separator (suppliers usually send ';')
    """
    categories = [
        "Electronique",
        "Maison",
        "Jardin",
        "Sport",
        "Jouets",
        "Beaute",
        "Bureau",
    ]

    adjectives = ["Premium", "Compact", "Portable", "Sans fil", "Pro", "Eco"]

    products = ["Lampe", "Enceinte", "Perceuse", "Casque", "Chargeur", "Bouilloire"]

    brands = ["Acme", "Nordik", "Voltix", "Maisonette"]

    with open(output_file, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, delimiter=delimiter)
        writer.writerow(["reference", "designation", "ean", "prix_achat", "stock", "marque", "categorie"])

        for i in range(num_rows):
            reference = f"REF-{i+1:08d}"
            name = f"{random.choice(products)} {random.choice(adjectives)}"
            price = f"{random.uniform(2, 400):.2f}".replace(".", ",")
            # Roughly one product in five has no EAN
            ean = ean13(i) if random.random() > 0.2 else ""

            writer.writerow(
                [
                    reference,
                    name,
                    ean,
                    price,
                    random.randint(0, 500),
                    random.choice(brands),
                    random.choice(categories),
                ]
            )

            # Print progress every 10,000 rows
            if (i + 1) % 10000 == 0:
                print(f"Generated {i+1:,} rows...")

    print(f"✅ Successfully generated {num_rows:,} supplier products in {output_file}")


def main():
    """Main function to parse arguments and generate CSV."""
    if len(sys.argv) < 2:
        print("Usage: python generate_csv.py <num_rows> [output_file]")
        print("Example: python generate_csv.py 50000 supplier_50k.csv")
        sys.exit(1)

    num_rows = int(sys.argv[1])
    output_file = sys.argv[2] if len(sys.argv) > 2 else f"supplier_{num_rows}.csv"

    print(f"Generating supplier CSV with {num_rows:,} rows...")
    generate_csv(num_rows, output_file)


if __name__ == "__main__":
    main()
