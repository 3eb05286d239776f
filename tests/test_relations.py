"""
Relation resolution tests: eager includes, lazy loads, scoped repositories
and nested inserts.
"""

import pytest

from liverepo import DataContext, DataLayerConfig, Environment, InMemoryDataProvider, ValidationError
from liverepo.repository import Repository

from tests.models import Category, Customer, Order, Product


@pytest.fixture
async def catalog(context):
    categories = context.repo(Category)
    products = context.repo(Product)
    tools = await categories.insert({"name": "Tools"})
    garden = await categories.insert({"name": "Garden"})
    await products.insert([
        {"name": "Hammer", "price": 12.0, "category_id": tools.id},
        {"name": "Saw", "price": 20.0, "category_id": tools.id},
        {"name": "Rake", "price": 15.0, "category_id": garden.id},
        {"name": "Gift card", "price": 25.0},
    ])
    return tools, garden


class TestEagerLoading:
    """Includes resolved in batches"""

    @pytest.mark.asyncio
    async def test_include_to_one(self, context, provider, catalog):
        tools, garden = catalog
        finds_before = provider.metrics.finds
        products = await context.repo(Product).find(include={"category": True})
        assert provider.metrics.finds - finds_before == 2
        by_name = {p.name: p for p in products}
        assert by_name["Hammer"].category.name == "Tools"
        assert by_name["Rake"].category.name == "Garden"
        assert by_name["Gift card"].category is None
        assert by_name["Hammer"].category is by_name["Saw"].category
        assert not by_name["Hammer"].ref.was_changed()

    @pytest.mark.asyncio
    async def test_include_to_many(self, context, catalog):
        categories = await context.repo(Category).find(include={"products": True})
        assert [c.name for c in categories] == ["Garden", "Tools"]
        assert [p.name for p in categories[0].products] == ["Rake"]
        assert [p.name for p in categories[1].products] == ["Hammer", "Saw"]

    @pytest.mark.asyncio
    async def test_include_options(self, context, catalog):
        categories = await context.repo(Category).find(include={
            "products": {"where": {"price": {"$gt": 12.0}}, "order_by": {"price": "desc"}, "limit": 1},
        })
        tools = next(c for c in categories if c.name == "Tools")
        assert [p.name for p in tools.products] == ["Saw"]

    @pytest.mark.asyncio
    async def test_nested_include_shares_instances(self, context, catalog):
        categories = await context.repo(Category).find(include={
            "products": {"include": {"category": True}},
        })
        tools = next(c for c in categories if c.name == "Tools")
        assert all(p.category is tools for p in tools.products)

    @pytest.mark.asyncio
    async def test_include_depth_is_limited(self):
        config = DataLayerConfig.for_environment(Environment.TESTING)
        config.query.max_include_depth = 1
        context = DataContext(InMemoryDataProvider(), config)
        solo = await context.repo(Category).insert({"name": "Solo"})
        await context.repo(Product).insert({"name": "Lamp", "category_id": solo.id})
        with pytest.raises(ValidationError):
            await context.repo(Category).find(include={"products": {"include": {"category": True}}})
        await context.close()

    @pytest.mark.asyncio
    async def test_include_must_name_relations(self, context, catalog):
        with pytest.raises(ValidationError):
            await context.repo(Product).find(include={"name": True})
        with pytest.raises(ValidationError):
            await context.repo(Product).find(include={"category": "yes"})

    @pytest.mark.asyncio
    async def test_reference_include(self, context):
        customers = context.repo(Customer)
        orders = context.repo(Order)
        ann = await customers.insert({"name": "Ann"})
        await orders.insert({"customer": ann, "total": 3.0})
        await orders.insert({"total": 4.0})

        found = await orders.find(include={"customer": True})
        assert found[0].customer.name == "Ann"
        assert found[0].ref.fields.customer.get_id() == ann.id
        assert found[1].customer is None


class TestLazyLoading:
    @pytest.mark.asyncio
    async def test_load_to_one(self, context, catalog):
        tools, _ = catalog
        products = context.repo(Product)
        hammer = await products.find_first({"name": "Hammer"})
        assert hammer.category is None

        category = await hammer.ref.fields.category.load()
        assert category.name == "Tools"
        assert hammer.category is category
        assert not hammer.ref.was_changed()

        relation = products.relations(hammer).category
        assert relation.id == tools.id
        assert (await relation.find_one()).id == tools.id

    @pytest.mark.asyncio
    async def test_load_to_many(self, context, catalog):
        tools, _ = catalog
        loaded = await tools.ref.fields.products.load()
        assert sorted(p.name for p in loaded) == ["Hammer", "Saw"]
        assert tools.products == loaded

    @pytest.mark.asyncio
    async def test_assigning_related_entity_sets_key(self, context, catalog):
        _, garden = catalog
        products = context.repo(Product)
        hammer = await products.find_first({"name": "Hammer"})
        hammer.category = garden
        assert hammer.ref.was_changed()
        await hammer.ref.save()
        assert (await products.find_id(hammer.id)).category_id == garden.id


class TestScopedRepositories:
    @pytest.mark.asyncio
    async def test_to_many_repository(self, context, catalog):
        tools, garden = catalog
        scoped = context.repo(Category).relations(tools).products
        assert isinstance(scoped, Repository)
        assert await scoped.count() == 2

        drill = await scoped.insert({"name": "Drill", "price": 80.0})
        assert drill.category_id == tools.id
        assert [p.name for p in await scoped.find(order_by={"name": "asc"})] == ["Drill", "Hammer", "Saw"]
        assert scoped.create().category_id == tools.id

    @pytest.mark.asyncio
    async def test_reference_backed_to_many(self, context):
        ann = await context.repo(Customer).insert({"name": "Ann"})
        orders = context.repo(Customer).relations(ann).orders
        order = await orders.insert({"total": 9.0})
        assert order.ref.fields.customer.get_id() == ann.id
        assert await orders.count() == 1
        assert await context.repo(Order).count({"customer": ann}) == 1


class TestNestedInsert:
    @pytest.mark.asyncio
    async def test_parent_inserted_first(self, context, provider):
        product = await context.repo(Product).insert_with_relations({
            "name": "Saw",
            "category": {"name": "Tools"},
        })
        categories = provider.rows("categories")
        products = provider.rows("products")
        assert len(categories) == 1
        assert len(products) == 1
        assert products[0]["category_id"] == categories[0]["id"]
        assert product.category.name == "Tools"

    @pytest.mark.asyncio
    async def test_children_inserted_after_owner(self, context, provider):
        category = await context.repo(Category).insert_with_relations({
            "name": "Kitchen",
            "products": [{"name": "Pan"}, {"name": "Pot"}],
        })
        assert [p.name for p in category.products] == ["Pan", "Pot"]
        rows = provider.rows("products")
        assert {r["category_id"] for r in rows} == {category.id}
