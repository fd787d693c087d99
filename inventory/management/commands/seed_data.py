"""
Management command to seed the database with sample data.

Generates:
- Jewelry products with color/material/size variants
- One stock unit per variant with random stock
- A handful of discount codes (WELCOME10, SUMMER5, VIP20, ...)

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone

from discounts.models import DiscountCode, DiscountUsage
from inventory.models import Product, StockMovement, StockUnit


PRODUCT_TEMPLATES = [
    ('RING', 'Stacking Ring', ['48', '50', '52', '54', '56']),
    ('NECK', 'Pendant Necklace', ['40cm', '45cm', '50cm']),
    ('EARR', 'Hoop Earrings', ['S', 'M', 'L']),
    ('BRAC', 'Chain Bracelet', ['16cm', '18cm', '20cm']),
    ('ANKL', 'Beaded Anklet', ['One size']),
]

ADJECTIVES = [
    'Classic', 'Minimal', 'Twisted', 'Hammered', 'Vintage',
    'Dainty', 'Bold', 'Braided', 'Organic', 'Celestial'
]

COLORS = ['Gold', 'Silver', 'Rose Gold', 'Black']
MATERIALS = ['Sterling Silver', 'Gold Plated Brass', 'Stainless Steel', 'Solid Gold']


class Command(BaseCommand):
    help = 'Seed the database with sample products, stock units and discount codes'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=40,
            help='Number of products to create (default: 40)',
        )
        parser.add_argument(
            '--max-stock',
            type=int,
            default=25,
            help='Upper bound for random stock per unit (default: 25)',
        )
        parser.add_argument(
            '--seed',
            type=int,
            default=None,
            help='Random seed for reproducible data',
        )

    def handle(self, *args, **options):
        if options['seed'] is not None:
            random.seed(options['seed'])

        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            products = self._create_products(options['products'])
            self._create_stock_units(products, options['max_stock'])
            self._create_discounts()

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))

    def _clear_data(self):
        """Clear all existing data, orders included (hard delete)."""
        from orders.models import Dispute, Order, Refund

        DiscountUsage.objects.all().delete()
        StockMovement.objects.all().delete()
        Refund.objects.all().delete()
        Dispute.objects.all().delete()
        Order.all_objects.all().delete()
        StockUnit.objects.all().delete()
        Product.objects.all().delete()
        DiscountCode.objects.all().delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_products(self, count):
        """Create sample products with unique titles."""
        products = []
        existing_titles = set(Product.objects.values_list('title', flat=True))

        self.stdout.write(f'Creating {count} products...')

        for i in range(count):
            prefix, base_name, sizes = PRODUCT_TEMPLATES[i % len(PRODUCT_TEMPLATES)]
            for _ in range(10):  # Try up to 10 times to get unique title
                title = f"{random.choice(ADJECTIVES)} {base_name}"
                if title not in existing_titles:
                    break
                title = f"{title} No. {random.randint(2, 99)}"
                if title not in existing_titles:
                    break
            else:
                title = f"{base_name} {i + 1}"
            existing_titles.add(title)

            products.append((prefix, sizes, Product(
                title=title,
                description=random.choice([
                    f"Handcrafted {base_name.lower()} made to last.",
                    f"Our best-selling {base_name.lower()}, layered or alone.",
                    "",
                ]),
            )))

        Product.objects.bulk_create([product for _, _, product in products])
        self.stdout.write(self.style.SUCCESS(f'Created {len(products)} products'))
        return products

    def _create_stock_units(self, products, max_stock):
        """Create one stock unit per color/material/size combination."""
        units = []
        counters = {}
        taken = set(StockUnit.objects.values_list('sku', flat=True))

        for prefix, sizes, product in products:
            color = random.choice(COLORS)
            material = random.choice(MATERIALS)
            base_price = random.randint(19, 249) * 100 + 90

            for size in sizes:
                counters[prefix] = counters.get(prefix, 0) + 1
                sku = f"{prefix}-{counters[prefix]:02d}"
                while sku in taken:
                    counters[prefix] += 1
                    sku = f"{prefix}-{counters[prefix]:02d}"
                taken.add(sku)

                inventory = random.randint(0, max_stock)
                units.append(StockUnit(
                    product=product,
                    sku=sku,
                    color=color,
                    material=material,
                    size=size,
                    price=base_price,
                    inventory=inventory,
                    is_active=inventory > 0,
                    sold_out_at=None if inventory > 0 else timezone.now(),
                ))

        StockUnit.objects.bulk_create(units, batch_size=500)
        self.stdout.write(self.style.SUCCESS(f'Created {len(units)} stock units'))

    def _create_discounts(self):
        """Create sample discount codes."""
        now = timezone.now()
        discounts = [
            dict(code='WELCOME10', description='10% off a first order',
                 discount_type=DiscountCode.DiscountType.PERCENTAGE, value=10, per_user_cap=1),
            dict(code='SUMMER5', description='5 EUR off orders over 30 EUR',
                 discount_type=DiscountCode.DiscountType.FIXED_AMOUNT, value=500,
                 minimum_subtotal=3000, ends_at=now + timedelta(days=90)),
            dict(code='VIP20', description='20% off, limited run',
                 discount_type=DiscountCode.DiscountType.PERCENTAGE, value=20, usage_cap=50),
            dict(code='LAUNCH15', description='Launch week, not started yet',
                 discount_type=DiscountCode.DiscountType.PERCENTAGE, value=15,
                 starts_at=now + timedelta(days=7), ends_at=now + timedelta(days=14)),
        ]

        created_count = 0
        for fields in discounts:
            code = fields.pop('code')
            _, created = DiscountCode.objects.get_or_create(code=code, defaults=fields)
            if created:
                created_count += 1
                self.stdout.write(f'  Created discount code: {code}')

        self.stdout.write(self.style.SUCCESS(f'Created {created_count} discount codes'))
