"""Initial schema: profiles, lists, memberships and items, with RLS policies
and the change-notification trigger.

Access to a list is decided by list_role(), a SECURITY DEFINER lookup of the
current user's role in list_members. Policies on lists and items call it
instead of querying list_members, which has its own policy.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Empty or unset app.user_id is the system bypass
    op.execute("""
        CREATE OR REPLACE FUNCTION get_app_user_id() RETURNS uuid AS $$
        DECLARE
            val text;
        BEGIN
            val := current_setting('app.user_id', true);
            IF val IS NULL OR val = '' THEN
                RETURN NULL;
            END IF;
            RETURN val::uuid;
        END;
        $$ LANGUAGE plpgsql STABLE;
    """)

    # Create profiles table
    op.execute("""
        CREATE TABLE profiles (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email TEXT UNIQUE NOT NULL,
            display_name TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)

    # Create lists table
    op.execute("""
        CREATE TABLE lists (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL,
            owner_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)

    # Create list_members table
    op.execute("""
        CREATE TABLE list_members (
            list_id UUID NOT NULL REFERENCES lists(id) ON DELETE CASCADE,
            user_id UUID NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
            role TEXT NOT NULL DEFAULT 'editor' CHECK (role IN ('viewer', 'editor', 'owner')),
            added_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (list_id, user_id)
        );
    """)

    op.execute("""
        CREATE INDEX idx_list_members_user ON list_members(user_id);
    """)

    # Create items table
    op.execute("""
        CREATE TABLE items (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            list_id UUID NOT NULL REFERENCES lists(id) ON DELETE CASCADE,
            text TEXT NOT NULL CHECK (char_length(btrim(text)) BETWEEN 1 AND 500),
            quantity INTEGER CHECK (quantity BETWEEN 1 AND 999),
            notes TEXT CHECK (char_length(notes) <= 1000),
            done BOOLEAN NOT NULL DEFAULT false,
            priority BOOLEAN NOT NULL DEFAULT false,
            position INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 1,
            deleted BOOLEAN NOT NULL DEFAULT false,
            created_by UUID REFERENCES profiles(id) ON DELETE SET NULL,
            client_token TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)

    op.execute("""
        CREATE INDEX idx_items_list_position ON items(list_id, position) WHERE NOT deleted;
    """)

    # Role of the current user in a list, NULL if not a member
    op.execute("""
        CREATE OR REPLACE FUNCTION list_role(p_list_id uuid) RETURNS text AS $$
            SELECT role FROM list_members
            WHERE list_id = p_list_id AND user_id = get_app_user_id();
        $$ LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public;
    """)

    # RLS policies
    op.execute("ALTER TABLE profiles ENABLE ROW LEVEL SECURITY")
    op.execute("ALTER TABLE lists ENABLE ROW LEVEL SECURITY")
    op.execute("ALTER TABLE list_members ENABLE ROW LEVEL SECURITY")
    op.execute("ALTER TABLE items ENABLE ROW LEVEL SECURITY")

    # Profiles: your own, and those of people you share a list with
    op.execute("""
        CREATE POLICY profiles_select ON profiles
        FOR SELECT
        USING (
            get_app_user_id() IS NULL OR
            id = get_app_user_id() OR
            EXISTS (
                SELECT 1 FROM list_members m
                WHERE m.user_id = profiles.id AND list_role(m.list_id) IS NOT NULL
            )
        );
    """)

    op.execute("""
        CREATE POLICY profiles_update_own ON profiles
        FOR UPDATE
        USING (get_app_user_id() IS NULL OR id = get_app_user_id());
    """)

    op.execute("""
        CREATE POLICY lists_select ON lists
        FOR SELECT
        USING (get_app_user_id() IS NULL OR list_role(id) IS NOT NULL);
    """)

    op.execute("""
        CREATE POLICY lists_insert ON lists
        FOR INSERT
        WITH CHECK (get_app_user_id() IS NULL OR owner_id = get_app_user_id());
    """)

    op.execute("""
        CREATE POLICY lists_modify_owner ON lists
        FOR UPDATE
        USING (get_app_user_id() IS NULL OR list_role(id) = 'owner');
    """)

    op.execute("""
        CREATE POLICY lists_delete_owner ON lists
        FOR DELETE
        USING (get_app_user_id() IS NULL OR list_role(id) = 'owner');
    """)

    op.execute("""
        CREATE POLICY list_members_select ON list_members
        FOR SELECT
        USING (get_app_user_id() IS NULL OR list_role(list_id) IS NOT NULL);
    """)

    op.execute("""
        CREATE POLICY list_members_manage ON list_members
        FOR ALL
        USING (get_app_user_id() IS NULL OR list_role(list_id) = 'owner')
        WITH CHECK (get_app_user_id() IS NULL OR list_role(list_id) = 'owner');
    """)

    op.execute("""
        CREATE POLICY items_select ON items
        FOR SELECT
        USING (get_app_user_id() IS NULL OR list_role(list_id) IS NOT NULL);
    """)

    op.execute("""
        CREATE POLICY items_insert ON items
        FOR INSERT
        WITH CHECK (get_app_user_id() IS NULL OR list_role(list_id) IN ('editor', 'owner'));
    """)

    op.execute("""
        CREATE POLICY items_update ON items
        FOR UPDATE
        USING (get_app_user_id() IS NULL OR list_role(list_id) IN ('editor', 'owner'))
        WITH CHECK (get_app_user_id() IS NULL OR list_role(list_id) IN ('editor', 'owner'));
    """)

    op.execute("""
        CREATE POLICY items_delete ON items
        FOR DELETE
        USING (get_app_user_id() IS NULL OR list_role(list_id) IN ('editor', 'owner'));
    """)

    # Policies apply to the table owner too. list_members stays unforced so
    # list_role() can read it.
    op.execute("ALTER TABLE lists FORCE ROW LEVEL SECURITY")
    op.execute("ALTER TABLE items FORCE ROW LEVEL SECURITY")

    # Change notifications. Channel name must match LISTSYNC_NOTIFY_CHANNEL.
    # pg_notify payloads must stay under 8000 bytes: 'old' never carries
    # text or notes, and a row whose text still does not fit is sent without
    # them as 'partial' for the listener to fetch.
    op.execute("""
        CREATE OR REPLACE FUNCTION notify_item_change() RETURNS trigger AS $$
        DECLARE
            rec items;
            creator text;
            payload jsonb;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                rec := OLD;
            ELSE
                rec := NEW;
            END IF;

            SELECT left(COALESCE(display_name, email), 200) INTO creator
            FROM profiles WHERE id = rec.created_by;

            payload := jsonb_build_object(
                'op', TG_OP,
                'table', TG_TABLE_NAME,
                'record', to_jsonb(rec) || jsonb_build_object('created_by_name', creator),
                'old', CASE WHEN TG_OP = 'UPDATE' THEN to_jsonb(OLD) - 'text' - 'notes' ELSE NULL END
            );
            IF octet_length(payload::text) >= 7900 THEN
                payload := jsonb_build_object(
                    'op', TG_OP,
                    'table', TG_TABLE_NAME,
                    'partial', true,
                    'record', (to_jsonb(rec) - 'text' - 'notes') || jsonb_build_object('created_by_name', creator),
                    'old', NULL
                );
            END IF;

            PERFORM pg_notify('list_item_changes', payload::text);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql SECURITY DEFINER SET search_path = public;
    """)

    op.execute("""
        CREATE TRIGGER items_notify_change
        AFTER INSERT OR UPDATE OR DELETE ON items
        FOR EACH ROW EXECUTE FUNCTION notify_item_change();
    """)


def downgrade():
    op.execute("DROP TRIGGER IF EXISTS items_notify_change ON items")
    op.execute("DROP FUNCTION IF EXISTS notify_item_change()")
    op.execute("DROP TABLE IF EXISTS items CASCADE")
    op.execute("DROP TABLE IF EXISTS list_members CASCADE")
    op.execute("DROP TABLE IF EXISTS lists CASCADE")
    op.execute("DROP TABLE IF EXISTS profiles CASCADE")
    op.execute("DROP FUNCTION IF EXISTS list_role(uuid)")
    op.execute("DROP FUNCTION IF EXISTS get_app_user_id()")
