"""Repository layer for the platform object model.

Every public function takes ``(session, ctx, ...)``: an AsyncSession owned
by the caller and a RequestContext carrying organization, actor and source.
Functions flush but never commit.

- object_types: create_object_definition, resolve_object_type, get_merged_schema,
                add_custom_property, override_property, migrate_schema
- records: create, update, archive, unarchive, get_by_id, search,
           batch_create, batch_update, rollback_bulk_operation
- associations: define_association_type, associate, dissociate,
                get_associations, set_association_label
- pipelines: create_pipeline, move_to_stage, remove_from_pipeline,
             get_stage_history, get_pipeline_summary, create_automation
- lists: create_list, add_member, remove_member, refresh_dynamic_list,
         create_segment, refresh_segment
- audit: record, get_audit_trail, get_property_history, partition upkeep
- counters: recompute and reconcile denormalized list/pipeline counts
"""
